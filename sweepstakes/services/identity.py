"""
Customer identity resolution.

Every entry is keyed by an email-shaped identity string. Purchases without an
email fall back to a placeholder built from the phone number, and failing
that from the order id. Two purchases that carry neither email nor phone
therefore count as two different customers; they are not merged.
"""
import hashlib
import re
from typing import Iterable, Optional

from sweepstakes.errors import ValidationError


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NON_DIGITS_RE = re.compile(r"\D+")
UNSAFE_LOCAL_PART_RE = re.compile(r"[^A-Za-z0-9._-]+")

PHONE_IDENTITY_TEMPLATE = "phone_{digits}@phone.customer"
ORDER_IDENTITY_TEMPLATE = "order_{order_id}@noemail.customer"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(EMAIL_RE.match(normalize_email(email)))


def hash_identity(identity: str) -> str:
    """One-way SHA-256 of the normalized identity, stored next to it for lookups."""
    return hashlib.sha256(normalize_email(identity).encode("utf-8")).hexdigest()


def phone_digits(phone: Optional[str]) -> str:
    return NON_DIGITS_RE.sub("", phone or "")


def order_identity_key(order_id: str) -> str:
    """
    Makes an order id usable as the local part of an email address. Ids that
    had to be rewritten get a short digest of the original appended so that
    distinct ids stay distinct.
    """
    safe = UNSAFE_LOCAL_PART_RE.sub("-", order_id).strip(".-")
    if safe == order_id:
        return safe
    digest = hashlib.sha256(order_id.encode("utf-8")).hexdigest()[:8]
    return f"{safe}-{digest}" if safe else digest


def resolve_customer_identity(
    emails: Iterable[Optional[str]] = (),
    phone: Optional[str] = None,
    order_id: Optional[str] = None,
) -> str:
    """
    Derives a stable identity for a purchase.

    Args:
        emails: Candidate emails in priority order (primary, contact, customer)
        phone: Phone number in any format
        order_id: Order id, used when neither email nor phone is usable

    Returns:
        str: Normalized email, or a synthesized placeholder address

    Raises:
        ValidationError: no email, no phone digits and no order id
    """
    for email in emails:
        if is_valid_email(email):
            return normalize_email(email)

    digits = phone_digits(phone)
    if digits:
        return PHONE_IDENTITY_TEMPLATE.format(digits=digits)

    order_id = str(order_id).strip() if order_id is not None else ""
    if order_id:
        return ORDER_IDENTITY_TEMPLATE.format(order_id=order_identity_key(order_id))

    raise ValidationError("Cannot resolve a customer identity without email, phone or order id")


def is_placeholder_identity(identity: str) -> bool:
    return identity.endswith("@phone.customer") or identity.endswith("@noemail.customer")
