from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional

from sweepstakes.database.db import get_session
from sweepstakes.database.repositories import StoreRepository
from sweepstakes.errors import StoreNotFoundError, ValidationError


class StoreIn(BaseModel):
    name: str
    shop_domain: Optional[str] = None


class DomainIn(BaseModel):
    shop_domain: Optional[str] = None


class StoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    shop_domain: Optional[str] = None
    created_at: Optional[datetime] = None


router = APIRouter(prefix="/api/stores", tags=["stores"])


@router.post("", status_code=201)
async def create_store(data: StoreIn, session: AsyncSession = Depends(get_session)):
    if not data.name.strip():
        raise ValidationError("Store name is required")
    store = await StoreRepository(session).create(data.name.strip(), data.shop_domain)
    return {"success": True, "message": "Store created successfully",
            "data": StoreOut.model_validate(store).model_dump(mode="json")}


@router.get("/{store_id}")
async def get_store(store_id: int, session: AsyncSession = Depends(get_session)):
    store = await StoreRepository(session).get_by_id(store_id)
    if store is None:
        raise StoreNotFoundError(store_id=store_id)
    return {"success": True, "data": StoreOut.model_validate(store).model_dump(mode="json")}


@router.put("/{store_id}/domain")
async def change_store_domain(store_id: int, data: DomainIn, session: AsyncSession = Depends(get_session)):
    """Re-points webhook deliveries for a shop domain at this store."""
    store = await StoreRepository(session).change_domain(store_id, data.shop_domain)
    return {"success": True, "message": "Store domain updated",
            "data": StoreOut.model_validate(store).model_dump(mode="json")}
