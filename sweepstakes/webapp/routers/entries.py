from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sweepstakes.database.db import get_session
from sweepstakes.database.models import EntrySource
from sweepstakes.database.repositories import PromoRepository, EntryLedger
from sweepstakes.errors import ValidationError
from sweepstakes.services.accrual import EntryAccrualEngine, PromoTerms, ensure_accepting_entries
from sweepstakes.services.notifications import Notifier
from sweepstakes.webapp.dependencies import get_notifier, client_ip


class ManualEntryIn(BaseModel):
    email: Optional[str] = None
    promo_id: Optional[int] = None
    source: str = EntrySource.DIRECT
    customer_name: Optional[str] = None
    consent_brand: bool = False
    consent_rafl: bool = True


class AdminEntryIn(BaseModel):
    email: Optional[str] = None
    promo_id: Optional[int] = None
    customer_name: Optional[str] = None
    created_by: Optional[str] = None


class EntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    promo_id: int
    store_id: int
    customer_email: str
    customer_name: Optional[str] = None
    entry_count: int
    source: str
    order_id: Optional[str] = None
    order_total: Optional[Decimal] = None
    is_manual: bool
    created_at: Optional[datetime] = None


router = APIRouter(prefix="/api/entries", tags=["entries"])


def _require(email: Optional[str], promo_id: Optional[int]) -> None:
    if not email or promo_id is None:
        raise ValidationError("Email and promo ID are required")


@router.post("/manual", status_code=201)
async def create_manual_entry(
    data: ManualEntryIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    """No-purchase-necessary signup: one entry per call."""
    _require(data.email, data.promo_id)
    if data.source == EntrySource.ADMIN_MANUAL:
        raise ValidationError("Use the admin endpoint for admin entries", {"source": data.source})

    promo = await PromoRepository(session).get_or_raise(data.promo_id)
    ensure_accepting_entries(promo)

    result = await EntryAccrualEngine(session, notifier).accrue_manual(
        PromoTerms.from_promo(promo),
        data.email,
        source=data.source,
        customer_name=data.customer_name,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        consent_brand=data.consent_brand,
        consent_rafl=data.consent_rafl,
    )
    return {
        "success": True,
        "message": "Entry created successfully",
        "data": {**result.to_dict(), "email": result.customer_identity, "source": data.source},
    }


@router.post("/admin", status_code=201)
async def create_admin_entry(
    data: AdminEntryIn,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    """Operator-created manual entry. The IP limit does not apply."""
    _require(data.email, data.promo_id)

    promo = await PromoRepository(session).get_or_raise(data.promo_id)
    ensure_accepting_entries(promo)

    result = await EntryAccrualEngine(session, notifier).accrue_manual(
        PromoTerms.from_promo(promo),
        data.email,
        source=EntrySource.ADMIN_MANUAL,
        customer_name=data.customer_name,
        created_by=data.created_by,
    )
    return {
        "success": True,
        "message": "Manual entry created successfully",
        "data": {**result.to_dict(), "email": result.customer_identity, "source": EntrySource.ADMIN_MANUAL},
    }


@router.get("/{promo_id}")
async def list_entries(
    promo_id: int,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    await PromoRepository(session).get_or_raise(promo_id)
    ledger = EntryLedger(session)
    entries: List[EntryOut] = [EntryOut.model_validate(entry) for entry in await ledger.list_for_promo(promo_id, limit, offset)]
    return {
        "success": True,
        "data": {
            "entries": [entry.model_dump(mode="json") for entry in entries],
            "stats": await ledger.stats_for_promo(promo_id),
        },
    }
