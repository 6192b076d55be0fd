"""
Entry accrual engine.

Turns a purchase or a manual signup into new entries for a (promo, customer)
pair while keeping the customer's total at or below the promo cap.

Purchases are partially honored: the raw entitlement ``floor(amount *
entries_per_dollar)`` is clamped to whatever room is left under the cap.
Manual entries are all-or-nothing: one entry per call, refused outright once
the customer (or the requesting IP) is at its limit.

The cap check is a read followed by a write. Two purchases of the same
customer processed at the same moment may both see the old total, so the cap
can be overrun by at most one purchase worth of entries.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from sweepstakes.database.models import Entry, EntrySource, Promo, PromoStatus
from sweepstakes.database.repositories.entry_repository import EntryLedger
from sweepstakes.errors import ValidationError, DuplicateOrderError, CapReachedError, PromoNotActiveError
from sweepstakes.services.identity import is_valid_email, normalize_email, hash_identity
from sweepstakes.services.notifications import Notifier, LoggingNotifier, notify_safely
from sweepstakes.utils.helpers import format_log_message


logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"


@dataclass(frozen=True)
class PromoTerms:
    """
    The promo attributes accrual depends on, detached from the ORM object so
    that a rolled back session cannot expire them mid-request.
    """
    promo_id: int
    store_id: int
    title: str
    entries_per_dollar: int
    max_entries_per_email: int
    max_entries_per_ip: int

    @classmethod
    def from_promo(cls, promo: Promo) -> "PromoTerms":
        return cls(
            promo_id=promo.id,
            store_id=promo.store_id,
            title=promo.title,
            entries_per_dollar=promo.entries_per_dollar,
            max_entries_per_email=promo.max_entries_per_email,
            max_entries_per_ip=promo.max_entries_per_ip,
        )


@dataclass
class AccrualResult:
    promo_id: int
    customer_identity: str
    entries_added: int
    existing_total: int
    entry: Optional[Entry] = None
    requested: int = 0
    duplicate: bool = False
    capped: bool = False
    reason: str = "added"  # added | duplicate_order | cap_reached | below_minimum

    @property
    def total_after(self) -> int:
        return self.existing_total + self.entries_added

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promoId": self.promo_id,
            "entriesAdded": self.entries_added,
            "totalEntries": self.total_after,
            "requestedEntries": self.requested,
            "duplicate": self.duplicate,
            "capped": self.capped,
            "reason": self.reason,
            "entryId": self.entry.id if self.entry is not None else None,
        }


def ensure_accepting_entries(promo: Promo, now: Optional[datetime] = None) -> None:
    """
    Rejects accrual against promos that are not running. The engine itself
    does not look at promo status; callers run this first.

    Raises:
        PromoNotActiveError: status is not ``active`` or ``now`` is outside the promo window
    """
    if promo.status != PromoStatus.ACTIVE:
        raise PromoNotActiveError(promo.id, promo.status)
    now = now or datetime.now(timezone.utc)
    if not promo.is_within_window(now):
        raise PromoNotActiveError(promo.id, promo.status, "Promo is outside of its entry window")


def to_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Purchase amount must be a number", {"amount": value})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Purchase amount must be a number", {"amount": str(value)})
    if not amount.is_finite():
        raise ValidationError("Purchase amount must be finite", {"amount": str(value)})
    return amount


def _require_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer", {name: value})
    return value


def compute_purchase_entries(amount: Decimal, entries_per_dollar: int, existing_total: int, cap: int) -> Tuple[int, int]:
    """
    Returns ``(wanted, to_add)`` for a purchase.

    ``wanted`` is the raw entitlement ``floor(amount * entries_per_dollar)``;
    ``to_add`` is that entitlement clamped to the room left under ``cap``
    and is never negative.
    """
    wanted = int((amount * entries_per_dollar).to_integral_value(rounding=ROUND_FLOOR))
    if existing_total >= cap or wanted <= 0:
        return wanted, 0
    return wanted, min(wanted, cap - existing_total)


class EntryAccrualEngine:
    def __init__(self, session: AsyncSession, notifier: Optional[Notifier] = None):
        self.session = session
        self.ledger = EntryLedger(session)
        self.notifier = notifier or LoggingNotifier()

    async def accrue_purchase(
        self,
        promo_id: int,
        customer_identity: str,
        order_id: str,
        purchase_amount: Any,
        entries_per_dollar: int,
        cap: int,
        *,
        store_id: int,
        promo_title: Optional[str] = None,
        customer_name: Optional[str] = None,
        currency: str = "USD",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AccrualResult:
        """
        Records the entries earned by one order.

        A replayed order, a customer already at the cap and a purchase too
        small to earn an entry all succeed with zero entries added and no row
        written. ``purchase_amount`` is taken as already-normalized USD;
        ``currency`` is only recorded.

        Raises:
            ValidationError: malformed arguments, nothing is written
            StorageError: the insert failed for a reason other than a duplicate order
        """
        if promo_id is None:
            raise ValidationError("Promo ID is required")
        if not is_valid_email(customer_identity):
            raise ValidationError("Customer identity must be an email address", {"customer": customer_identity})
        order_id = str(order_id).strip() if order_id is not None else ""
        if not order_id:
            raise ValidationError("Order ID is required for purchase entries")
        amount = to_amount(purchase_amount)
        entries_per_dollar = _require_positive_int("entriesPerDollar", entries_per_dollar)
        cap = _require_positive_int("cap", cap)
        identity = normalize_email(customer_identity)

        if await self.ledger.exists_for_order(promo_id, order_id):
            logger.info(format_log_message("Order already processed", {"promo": promo_id, "order": order_id}))
            return AccrualResult(promo_id, identity, 0, await self.ledger.sum_entry_count_for(promo_id, identity),
                                 duplicate=True, reason="duplicate_order")

        existing_total = await self.ledger.sum_entry_count_for(promo_id, identity)
        wanted, to_add = compute_purchase_entries(amount, entries_per_dollar, existing_total, cap)

        if existing_total >= cap:
            logger.info(format_log_message("Customer already at cap", {
                "promo": promo_id, "order": order_id, "total": existing_total, "cap": cap,
            }))
            return AccrualResult(promo_id, identity, 0, existing_total, requested=wanted, capped=True,
                                 reason="cap_reached")
        if to_add <= 0:
            logger.info(format_log_message("Purchase below one entry", {
                "promo": promo_id, "order": order_id, "amount": amount,
            }))
            return AccrualResult(promo_id, identity, 0, existing_total, requested=wanted, reason="below_minimum")

        truncated = wanted > to_add
        entry = Entry(
            promo_id=promo_id,
            store_id=store_id,
            customer_email=identity,
            hashed_email=hash_identity(identity),
            customer_name=customer_name,
            entry_count=to_add,
            source=EntrySource.PURCHASE,
            order_id=order_id,
            order_total=amount,
            is_manual=False,
            meta={
                **(metadata or {}),
                "currency": currency,
                "requested_entries": wanted,
                "cap_truncated": truncated,
                "accrued_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        try:
            entry = await self.ledger.append(entry)
        except DuplicateOrderError:
            logger.info(format_log_message("Concurrent delivery already recorded order",
                                           {"promo": promo_id, "order": order_id}))
            return AccrualResult(promo_id, identity, 0, await self.ledger.sum_entry_count_for(promo_id, identity),
                                 duplicate=True, reason="duplicate_order")

        logger.info(format_log_message("Purchase entries added", {
            "promo": promo_id, "order": order_id, "added": to_add, "requested": wanted, "total": existing_total + to_add,
        }))
        await notify_safely(
            "entry confirmation",
            lambda: self.notifier.entry_confirmed(identity, promo_title or "", entry.id, to_add),
        )
        return AccrualResult(promo_id, identity, to_add, existing_total, entry=entry, requested=wanted,
                             capped=truncated)

    async def accrue_manual(
        self,
        terms: PromoTerms,
        email: str,
        *,
        source: str = EntrySource.DIRECT,
        customer_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        consent_brand: bool = False,
        consent_rafl: bool = True,
        created_by: Optional[str] = None,
    ) -> AccrualResult:
        """
        Adds exactly one entry for a no-purchase signup.

        Raises:
            ValidationError: missing promo or malformed email
            CapReachedError: the email already holds ``max_entries_per_email``
                entries, or the IP address already has ``max_entries_per_ip``
            StorageError: the insert failed
        """
        if terms is None or terms.promo_id is None:
            raise ValidationError("Promo ID is required")
        if not email or not is_valid_email(email):
            raise ValidationError("Invalid email format", {"email": email})
        if not source or source == EntrySource.PURCHASE:
            raise ValidationError("Manual entries cannot use the purchase source", {"source": source})

        identity = normalize_email(email)
        existing_total = await self.ledger.sum_entry_count_for(terms.promo_id, identity)
        if existing_total >= terms.max_entries_per_email:
            logger.info(format_log_message("Manual entry refused, email at limit", {
                "promo": terms.promo_id, "total": existing_total, "max": terms.max_entries_per_email,
            }))
            raise CapReachedError("email", existing_total, terms.max_entries_per_email)

        if ip_address and ip_address != UNKNOWN_IP:
            ip_count = await self.ledger.count_for_ip(terms.promo_id, ip_address)
            if ip_count >= terms.max_entries_per_ip:
                logger.info(format_log_message("Manual entry refused, IP at limit", {
                    "promo": terms.promo_id, "ip": ip_address, "count": ip_count, "max": terms.max_entries_per_ip,
                }))
                raise CapReachedError("ip", ip_count, terms.max_entries_per_ip)

        entry_type = "admin_manual" if source == EntrySource.ADMIN_MANUAL else "manual"
        entry = Entry(
            promo_id=terms.promo_id,
            store_id=terms.store_id,
            customer_email=identity,
            hashed_email=hash_identity(identity),
            customer_name=customer_name,
            entry_count=1,
            source=source,
            order_id=None,
            order_total=Decimal("0"),
            is_manual=True,
            meta={
                "ip_address": ip_address or UNKNOWN_IP,
                "user_agent": user_agent or "unknown",
                "entry_type": entry_type,
                "consent_brand": consent_brand,
                "consent_rafl": consent_rafl,
                "created_by": created_by,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        entry = await self.ledger.append(entry)

        logger.info(format_log_message("Manual entry added", {
            "promo": terms.promo_id, "entry": entry.id, "source": source, "total": existing_total + 1,
        }))
        await notify_safely(
            "entry confirmation",
            lambda: self.notifier.entry_confirmed(identity, terms.title, entry.id, 1),
        )
        return AccrualResult(terms.promo_id, identity, 1, existing_total, entry=entry, requested=1)
