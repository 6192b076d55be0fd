from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone
from typing import List, Optional
import logging

from sweepstakes.database.models import Promo, PromoStatus
from sweepstakes.database.models.promo import as_utc
from sweepstakes.errors import PromoNotFoundError, InvalidStatusTransitionError, ValidationError, StorageError


logger = logging.getLogger(__name__)

# Fields an operator may edit after creation. Status has its own guarded path.
EDITABLE_FIELDS = {
    "title", "description", "start_date", "end_date", "prize_description", "prize_amount",
    "entries_per_dollar", "max_entries_per_email", "max_entries_per_ip", "enable_purchase_entries",
}

POSITIVE_FIELDS = ("entries_per_dollar", "max_entries_per_email", "max_entries_per_ip")
REQUIRED_FIELDS = {"title", "enable_purchase_entries", *POSITIVE_FIELDS}


def validate_promo_terms(values: dict) -> None:
    for field in REQUIRED_FIELDS:
        if field in values and values[field] is None:
            raise ValidationError(f"{field} cannot be empty")
    for field in POSITIVE_FIELDS:
        value = values.get(field)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
            raise ValidationError(f"{field} must be a positive integer", {field: value})

    start, end = as_utc(values.get("start_date")), as_utc(values.get("end_date"))
    if start and end and end < start:
        raise ValidationError("end_date must be after start_date")


class PromoRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, store_id: int, title: str, **fields) -> Promo:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown promo fields: {', '.join(sorted(unknown))}")
        if not title or not title.strip():
            raise ValidationError("Title is required")
        validate_promo_terms(fields)

        promo = Promo(store_id=store_id, title=title.strip(), status=PromoStatus.DRAFT, **fields)
        self.session.add(promo)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to create promo for store {store_id}: {e}")
            raise StorageError("Error creating promo", {"storeId": store_id}) from e
        await self.session.refresh(promo)
        logger.info(f"Created promo {promo.id} for store {store_id}")
        return promo

    async def get_by_id(self, promo_id: int) -> Optional[Promo]:
        result = await self.session.execute(select(Promo).where(Promo.id == promo_id))
        return result.scalar_one_or_none()

    async def get_or_raise(self, promo_id: int) -> Promo:
        promo = await self.get_by_id(promo_id)
        if promo is None:
            raise PromoNotFoundError(promo_id)
        return promo

    async def list_purchase_candidates(self, store_id: int, now: Optional[datetime] = None) -> List[Promo]:
        """
        Active, purchase-enabled promos of a store whose time window contains ``now``.
        """
        result = await self.session.execute(
            select(Promo)
            .where(
                Promo.store_id == store_id,
                Promo.status == PromoStatus.ACTIVE,
                Promo.enable_purchase_entries.is_(True),
            )
            .order_by(Promo.id.asc())
        )
        return [promo for promo in result.scalars().all() if promo.is_within_window(now)]

    async def list_active(self, store_id: Optional[int] = None) -> List[Promo]:
        query = select(Promo).where(Promo.status == PromoStatus.ACTIVE)
        if store_id is not None:
            query = query.where(Promo.store_id == store_id)
        result = await self.session.execute(query.order_by(Promo.id.desc()))
        return list(result.scalars().all())

    async def update(self, promo_id: int, **fields) -> Promo:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown promo fields: {', '.join(sorted(unknown))}")
        promo = await self.get_or_raise(promo_id)
        validate_promo_terms({"start_date": promo.start_date, "end_date": promo.end_date, **fields})

        for field, value in fields.items():
            setattr(promo, field, value)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError("Error updating promo", {"promoId": promo_id}) from e
        await self.session.refresh(promo)
        return promo

    async def set_status(self, promo_id: int, status: str) -> Promo:
        """
        Moves a promo through its lifecycle. ``ended`` is terminal.

        Raises:
            ValidationError: unknown status
            InvalidStatusTransitionError: the transition is not allowed
        """
        if status not in PromoStatus.ALL:
            raise ValidationError(f"Unknown promo status '{status}'", {"status": status})
        promo = await self.get_or_raise(promo_id)
        if promo.status == status:
            return promo
        if not PromoStatus.can_transition(promo.status, status):
            raise InvalidStatusTransitionError(promo_id, promo.status, status)

        previous = promo.status
        promo.status = status
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError("Error updating promo status", {"promoId": promo_id}) from e
        await self.session.refresh(promo)
        logger.info(f"Promo {promo_id} moved from {previous} to {status}")
        return promo

    async def mark_ended(self, promo_id: int) -> None:
        """
        Ends a promo after its winner has been drawn.
        Only non-terminal promos are touched, so repeating the call is harmless.
        """
        await self.session.execute(
            update(Promo)
            .where(Promo.id == promo_id, Promo.status != PromoStatus.ENDED)
            .values(status=PromoStatus.ENDED, updated_at=datetime.now(timezone.utc))
        )
        await self.session.commit()

    async def delete(self, promo_id: int) -> None:
        """
        Deletes a promo together with its entries and its winner.

        Raises:
            PromoNotFoundError: unknown promo
            StorageError: the delete failed
        """
        promo = await self.get_or_raise(promo_id)
        await self.session.delete(promo)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to delete promo {promo_id}: {e}")
            raise StorageError("Error deleting promo", {"promoId": promo_id}) from e
        logger.info(f"Deleted promo {promo_id}")
