"""
Exceptions raised by the entry accrual and winner selection core.

Every error carries the HTTP status the web layer answers with and a
``details`` mapping that is merged into the JSON error body.
"""
from typing import Any, Dict, Optional


class SweepstakesError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **self.details}


class ValidationError(SweepstakesError):
    """Malformed input. Never retried automatically."""
    status_code = 400


class DuplicateOrderError(SweepstakesError):
    """A purchase entry for this (promo, order) already exists."""
    status_code = 409

    def __init__(self, promo_id: int, order_id: str):
        super().__init__(
            f"Order {order_id} has already been processed for promo {promo_id}",
            {"promoId": promo_id, "orderId": order_id},
        )
        self.promo_id = promo_id
        self.order_id = order_id


class CapReachedError(SweepstakesError):
    """Manual entry refused because the customer or IP is at its limit."""
    status_code = 400

    def __init__(self, scope: str, current: int, maximum: int):
        label = "email" if scope == "email" else "IP address"
        super().__init__(
            f"Maximum entries per {label} reached ({maximum})",
            {"scope": scope, "currentEntries": current, "maxEntries": maximum},
        )
        self.scope = scope
        self.current = current
        self.maximum = maximum


class PromoNotFoundError(SweepstakesError):
    status_code = 404

    def __init__(self, promo_id):
        super().__init__("Promo not found", {"promoId": promo_id})
        self.promo_id = promo_id


class PromoNotActiveError(SweepstakesError):
    status_code = 400

    def __init__(self, promo_id, status: str, reason: Optional[str] = None):
        super().__init__(reason or f"Promo is not active (status: {status})", {"promoId": promo_id, "status": status})
        self.promo_id = promo_id
        self.status = status


class InvalidStatusTransitionError(SweepstakesError):
    status_code = 400

    def __init__(self, promo_id, current: str, target: str):
        super().__init__(
            f"Cannot move promo from '{current}' to '{target}'",
            {"promoId": promo_id, "status": current, "requestedStatus": target},
        )


class WinnerAlreadyExistsError(SweepstakesError):
    status_code = 409

    def __init__(self, promo_id):
        super().__init__("Winner has already been selected for this promo", {"promoId": promo_id})
        self.promo_id = promo_id


class NoEntriesError(SweepstakesError):
    status_code = 400

    def __init__(self, promo_id):
        super().__init__("No entries found for this promo", {"promoId": promo_id})
        self.promo_id = promo_id


class WinnerNotFoundError(SweepstakesError):
    status_code = 404

    def __init__(self, winner_id):
        super().__init__("Winner not found", {"winnerId": winner_id})


class StoreNotFoundError(SweepstakesError):
    status_code = 404

    def __init__(self, shop_domain=None, store_id=None):
        details = {"shopDomain": shop_domain} if store_id is None else {"storeId": store_id}
        super().__init__("Store not found", details)


class WebhookSignatureError(SweepstakesError):
    status_code = 401

    def __init__(self, reason: str):
        super().__init__("Invalid webhook signature", {"reason": reason})
        self.reason = reason


class StorageError(SweepstakesError):
    """
    The storage layer failed. Accrual is safe to retry because it is
    idempotent on the order id; a draw retry re-checks for an existing winner.
    """
    status_code = 503
