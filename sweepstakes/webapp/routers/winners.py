from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sweepstakes.database.db import get_session
from sweepstakes.database.repositories import PromoRepository, WinnerRepository
from sweepstakes.errors import ValidationError
from sweepstakes.services.notifications import Notifier
from sweepstakes.services.selection import WinnerSelectionEngine
from sweepstakes.webapp.dependencies import get_notifier


class DrawIn(BaseModel):
    promo_id: Optional[int] = None
    created_by: Optional[str] = None


class FlagIn(BaseModel):
    value: bool = True


class WinnerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    promo_id: int
    store_id: int
    entry_id: int
    customer_email: str
    customer_name: Optional[str] = None
    prize_description: Optional[str] = None
    prize_amount: Optional[Decimal] = None
    drawn_at: datetime
    notified: bool
    notified_at: Optional[datetime] = None
    claimed: bool
    claimed_at: Optional[datetime] = None
    created_by: Optional[str] = None


router = APIRouter(prefix="/api/winners", tags=["winners"])


def winner_payload(winner) -> Dict[str, Any]:
    return WinnerOut.model_validate(winner).model_dump(mode="json")


@router.post("/draw", status_code=201)
async def draw_winner(
    data: DrawIn,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    if data.promo_id is None:
        raise ValidationError("Promo ID is required")
    result = await WinnerSelectionEngine(session, notifier).select_winner(data.promo_id, data.created_by)
    return {
        "success": True,
        "message": "Winner selected successfully",
        "data": {"winner": winner_payload(result.winner), "stats": result.stats()},
    }


@router.get("/promo/{promo_id}")
async def get_promo_winner(promo_id: int, session: AsyncSession = Depends(get_session)):
    await PromoRepository(session).get_or_raise(promo_id)
    winner = await WinnerRepository(session).get_for_promo(promo_id)
    return {"success": True, "data": winner_payload(winner) if winner else None}


@router.post("/promo/{promo_id}/reconcile")
async def reconcile_promo(
    promo_id: int,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    ended = await WinnerSelectionEngine(session, notifier).reconcile_promo_status(promo_id)
    return {"success": ended, "promoId": promo_id, "promoEnded": ended}


@router.get("/store/{store_id}")
async def list_store_winners(store_id: int, session: AsyncSession = Depends(get_session)):
    winners = await WinnerRepository(session).list_for_store(store_id)
    return {"success": True, "data": [winner_payload(winner) for winner in winners]}


@router.post("/{winner_id}/notified")
async def set_notified(winner_id: int, data: FlagIn, session: AsyncSession = Depends(get_session)):
    winner = await WinnerRepository(session).set_notified(winner_id, data.value)
    return {"success": True, "message": "Winner notification status updated", "data": winner_payload(winner)}


@router.post("/{winner_id}/claimed")
async def set_claimed(winner_id: int, data: FlagIn, session: AsyncSession = Depends(get_session)):
    winner = await WinnerRepository(session).set_claimed(winner_id, data.value)
    return {"success": True, "message": "Winner claim status updated", "data": winner_payload(winner)}
