from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sweepstakes.config import settings
from sweepstakes.database.db import get_session
from sweepstakes.database.repositories import PromoRepository


class PromoIn(BaseModel):
    store_id: int
    title: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    prize_description: Optional[str] = None
    prize_amount: Optional[Decimal] = None
    entries_per_dollar: int = 1
    max_entries_per_email: int = settings.DEFAULT_MAX_ENTRIES_PER_EMAIL
    max_entries_per_ip: int = settings.DEFAULT_MAX_ENTRIES_PER_IP
    enable_purchase_entries: bool = True


class PromoUpdateIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    prize_description: Optional[str] = None
    prize_amount: Optional[Decimal] = None
    entries_per_dollar: Optional[int] = None
    max_entries_per_email: Optional[int] = None
    max_entries_per_ip: Optional[int] = None
    enable_purchase_entries: Optional[bool] = None


class StatusIn(BaseModel):
    status: str


class PromoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    store_id: int
    title: str
    description: Optional[str] = None
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    prize_description: Optional[str] = None
    prize_amount: Optional[Decimal] = None
    entries_per_dollar: int
    max_entries_per_email: int
    max_entries_per_ip: int
    enable_purchase_entries: bool


router = APIRouter(prefix="/api/promos", tags=["promos"])


def promo_payload(promo) -> Dict[str, Any]:
    return PromoOut.model_validate(promo).model_dump(mode="json")


@router.post("", status_code=201)
async def create_promo(data: PromoIn, session: AsyncSession = Depends(get_session)):
    fields = data.model_dump(exclude={"store_id", "title"})
    promo = await PromoRepository(session).create(data.store_id, data.title, **fields)
    return {"success": True, "message": "Promo created successfully", "data": promo_payload(promo)}


@router.get("/active")
async def list_active_promos(store_id: Optional[int] = Query(None), session: AsyncSession = Depends(get_session)):
    promos = await PromoRepository(session).list_active(store_id)
    return {"success": True, "data": [promo_payload(promo) for promo in promos]}


@router.get("/{promo_id}")
async def get_promo(promo_id: int, session: AsyncSession = Depends(get_session)):
    promo = await PromoRepository(session).get_or_raise(promo_id)
    return {"success": True, "data": promo_payload(promo)}


@router.patch("/{promo_id}")
async def update_promo(promo_id: int, data: PromoUpdateIn, session: AsyncSession = Depends(get_session)):
    promo = await PromoRepository(session).update(promo_id, **data.model_dump(exclude_unset=True))
    return {"success": True, "message": "Promo updated successfully", "data": promo_payload(promo)}


@router.post("/{promo_id}/status")
async def change_status(promo_id: int, data: StatusIn, session: AsyncSession = Depends(get_session)):
    promo = await PromoRepository(session).set_status(promo_id, data.status)
    return {"success": True, "data": promo_payload(promo)}


@router.delete("/{promo_id}")
async def delete_promo(promo_id: int, session: AsyncSession = Depends(get_session)):
    """Removes the promo; its entries and winner go with it."""
    await PromoRepository(session).delete(promo_id)
    return {"success": True, "message": "Promo deleted successfully", "promoId": promo_id}
