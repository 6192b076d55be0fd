"""
Purchase webhook ingestion.

Inbound order notifications are authenticated with an HMAC-SHA256 of the raw
request body (base64, Shopify style), normalized into a ``PurchaseEvent`` and
fed to the accrual engine once per candidate promo of the store.
"""
import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from sweepstakes.database.repositories import PromoRepository, StoreRepository, EntryLedger
from sweepstakes.errors import ValidationError, StoreNotFoundError, WebhookSignatureError
from sweepstakes.services.accrual import EntryAccrualEngine, AccrualResult, PromoTerms
from sweepstakes.services.identity import resolve_customer_identity, is_placeholder_identity
from sweepstakes.services.notifications import Notifier
from sweepstakes.utils.helpers import safe_get, first_present


logger = logging.getLogger(__name__)


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Checks the signature of a webhook delivery.

    Raises:
        WebhookSignatureError: no secret is configured, the header is missing,
            or the signature does not match
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing signature header")

    expected = compute_webhook_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        raise WebhookSignatureError("Signature mismatch")


class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[Union[int, str]] = None
    title: Optional[str] = None
    quantity: int = 1
    price: Optional[Decimal] = None
    sku: Optional[str] = None


class CustomerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class PurchaseEvent(BaseModel):
    """
    Normalized order notification. ``order_id`` and ``total_price`` are
    required; every customer signal is optional.
    """
    model_config = ConfigDict(extra="ignore")

    order_id: str
    order_number: Optional[Union[int, str]] = None
    email: Optional[str] = None
    contact_email: Optional[str] = None
    phone: Optional[str] = None
    customer: Optional[CustomerInfo] = None
    billing_phone: Optional[str] = None
    total_price: Decimal
    currency: str = "USD"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    line_items: List[LineItem] = []
    tags: List[str] = []

    @classmethod
    def from_order_payload(cls, payload: Any) -> "PurchaseEvent":
        """
        Builds an event from a Shopify order body.

        Raises:
            ValidationError: the payload is not an order
        """
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            raise ValidationError("Invalid order data received")

        tags = payload.get("tags") or ""
        if isinstance(tags, str):
            tags = [tag.strip() for tag in tags.split(",") if tag.strip()]

        try:
            return cls.model_validate({
                "order_id": str(payload["id"]),
                "order_number": payload.get("order_number"),
                "email": payload.get("email"),
                "contact_email": payload.get("contact_email"),
                "phone": payload.get("phone"),
                "customer": payload.get("customer") if isinstance(payload.get("customer"), dict) else None,
                "billing_phone": safe_get(payload, ["billing_address", "phone"]),
                "total_price": first_present(payload.get("total_price"), "0"),
                "currency": payload.get("currency") or "USD",
                "created_at": payload.get("created_at"),
                "updated_at": payload.get("updated_at"),
                "financial_status": payload.get("financial_status"),
                "fulfillment_status": payload.get("fulfillment_status"),
                "line_items": payload.get("line_items") or [],
                "tags": tags,
            })
        except PydanticValidationError as e:
            raise ValidationError("Invalid order data received", {
                "errors": [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()],
            }) from e

    @property
    def customer_name(self) -> Optional[str]:
        if self.customer is None:
            return None
        name = " ".join(part for part in (self.customer.first_name, self.customer.last_name) if part)
        return name.strip() or None

    def customer_identity(self) -> str:
        customer = self.customer or CustomerInfo()
        return resolve_customer_identity(
            emails=(self.email, self.contact_email, customer.email),
            phone=first_present(self.phone, customer.phone, self.billing_phone),
            order_id=self.order_id,
        )

    def entry_metadata(self) -> Dict[str, Any]:
        return {
            "order_number": str(self.order_number) if self.order_number is not None else None,
            "order_date": self.created_at,
            "financial_status": self.financial_status,
            "fulfillment_status": self.fulfillment_status,
            "line_items": [item.model_dump(mode="json") for item in self.line_items],
            "tags": self.tags,
        }


@dataclass
class IngestionReport:
    store_id: int
    order_id: str
    customer_identity: str
    results: List[AccrualResult] = field(default_factory=list)

    @property
    def entries_added(self) -> int:
        return sum(result.entries_added for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "customerEmail": self.customer_identity,
            "promosEvaluated": len(self.results),
            "entriesCreated": self.entries_added,
            "results": [result.to_dict() for result in self.results],
        }


class WebhookIngestor:
    def __init__(self, session: AsyncSession, notifier: Optional[Notifier] = None):
        self.session = session
        self.stores = StoreRepository(session)
        self.promos = PromoRepository(session)
        self.ledger = EntryLedger(session)
        self.engine = EntryAccrualEngine(session, notifier)

    async def _store_id(self, shop_domain: Optional[str]) -> int:
        if not shop_domain:
            raise ValidationError("Missing shop domain in headers")
        store_id = await self.stores.get_id_by_domain(shop_domain)
        if store_id is None:
            logger.error(f"Store not found for domain: {shop_domain}")
            raise StoreNotFoundError(shop_domain)
        return store_id

    async def ingest_order_created(self, shop_domain: Optional[str], event: PurchaseEvent) -> IngestionReport:
        """
        Accrues purchase entries for every active, purchase-enabled promo of the store.
        """
        store_id = await self._store_id(shop_domain)
        identity = event.customer_identity()
        candidates = [PromoTerms.from_promo(promo) for promo in await self.promos.list_purchase_candidates(store_id)]
        report = IngestionReport(store_id=store_id, order_id=event.order_id, customer_identity=identity)
        if is_placeholder_identity(identity):
            logger.info(f"Order {event.order_id} has no customer email, using {identity}")

        logger.info(f"Order {event.order_id} for store {store_id}: {event.total_price} {event.currency}, "
                    f"{len(candidates)} candidate promos")

        metadata = event.entry_metadata()
        for terms in candidates:
            result = await self.engine.accrue_purchase(
                terms.promo_id,
                identity,
                event.order_id,
                event.total_price,
                terms.entries_per_dollar,
                terms.max_entries_per_email,
                store_id=terms.store_id,
                promo_title=terms.title,
                customer_name=event.customer_name,
                currency=event.currency,
                metadata=metadata,
            )
            report.results.append(result)
        return report

    async def ingest_order_updated(self, shop_domain: Optional[str], event: PurchaseEvent) -> int:
        """
        Annotates the entries of an already processed order. Entry counts do not change.

        Returns:
            int: Number of annotated entries
        """
        store_id = await self._store_id(shop_domain)
        updated = await self.ledger.annotate_order(store_id, event.order_id, {
            "order_number": str(event.order_number) if event.order_number is not None else None,
            "financial_status": event.financial_status,
            "fulfillment_status": event.fulfillment_status,
            "updated_total": str(event.total_price),
            "updated_currency": event.currency,
            "order_updated_at": event.updated_at,
        })
        logger.info(f"Order {event.order_id} update annotated {updated} entries for store {store_id}")
        return updated
