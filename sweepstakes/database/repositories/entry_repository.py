from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List
import logging

from sweepstakes.database.models import Entry, EntrySource
from sweepstakes.errors import ValidationError, DuplicateOrderError, StorageError
from sweepstakes.services.identity import hash_identity


logger = logging.getLogger(__name__)


class EntryLedger:
    """
    Durable record of accrued entries.

    Rows are appended and never rewritten, apart from metadata annotations.
    The unique (promo_id, order_id) constraint is what makes purchase
    accrual idempotent under concurrent webhook redelivery; the pre-check in
    ``append`` only avoids a failed insert in the common case.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, entry: Entry) -> Entry:
        """
        Inserts a new entry.

        Raises:
            ValidationError: entry_count < 1, or a purchase entry without an order id
            DuplicateOrderError: a purchase entry for this (promo, order) already exists
            StorageError: any other storage failure
        """
        if entry.promo_id is None:
            raise ValidationError("Promo ID is required")
        if entry.entry_count is None or entry.entry_count < 1:
            raise ValidationError("entry_count must be a positive integer", {"entryCount": entry.entry_count})

        is_purchase = entry.source == EntrySource.PURCHASE
        if is_purchase:
            if not entry.order_id:
                raise ValidationError("Purchase entries require an order id")
            if await self.exists_for_order(entry.promo_id, entry.order_id):
                raise DuplicateOrderError(entry.promo_id, entry.order_id)

        promo_id, order_id = entry.promo_id, entry.order_id
        self.session.add(entry)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if is_purchase and await self.exists_for_order(promo_id, order_id):
                # Lost the race against a concurrent delivery of the same order
                raise DuplicateOrderError(promo_id, order_id) from e
            logger.error(f"Entry insert rejected by a constraint for promo {promo_id}: {e}")
            raise StorageError("Error creating entry", {"promoId": promo_id}) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Entry insert failed for promo {promo_id}: {e}")
            raise StorageError("Error creating entry", {"promoId": promo_id}) from e

        await self.session.refresh(entry)
        return entry

    async def exists_for_order(self, promo_id: int, order_id: str) -> bool:
        result = await self.session.execute(
            select(func.count()).select_from(Entry).where(
                Entry.promo_id == promo_id,
                Entry.order_id == str(order_id),
            )
        )
        return (result.scalar() or 0) > 0

    async def sum_entry_count_for(self, promo_id: int, customer_identity: str) -> int:
        """
        Total entries a customer holds in a promo, 0 when there are none.
        """
        result = await self.session.execute(
            select(func.coalesce(func.sum(Entry.entry_count), 0)).where(
                Entry.promo_id == promo_id,
                Entry.hashed_email == hash_identity(customer_identity),
            )
        )
        return int(result.scalar() or 0)

    async def count_for_ip(self, promo_id: int, ip_address: str) -> int:
        """
        Number of entry rows in a promo whose metadata records this IP address.
        """
        result = await self.session.execute(
            select(func.count()).select_from(Entry).where(
                Entry.promo_id == promo_id,
                Entry.meta["ip_address"].as_string() == ip_address,
            )
        )
        return int(result.scalar() or 0)

    async def all_entries_for(self, promo_id: int) -> List[Entry]:
        """
        Every entry of a promo in stable (insertion) order.
        """
        result = await self.session.execute(
            select(Entry).where(Entry.promo_id == promo_id).order_by(Entry.id.asc())
        )
        return list(result.scalars().all())

    async def list_for_promo(self, promo_id: int, limit: int = 100, offset: int = 0) -> List[Entry]:
        result = await self.session.execute(
            select(Entry)
            .where(Entry.promo_id == promo_id)
            .order_by(Entry.created_at.desc(), Entry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def stats_for_promo(self, promo_id: int) -> Dict[str, Any]:
        totals = await self.session.execute(
            select(
                func.count(Entry.id),
                func.coalesce(func.sum(Entry.entry_count), 0),
                func.count(func.distinct(Entry.hashed_email)),
            ).where(Entry.promo_id == promo_id)
        )
        rows, weight, customers = totals.one()

        by_source = await self.session.execute(
            select(Entry.source, func.coalesce(func.sum(Entry.entry_count), 0))
            .where(Entry.promo_id == promo_id)
            .group_by(Entry.source)
        )
        return {
            "totalRows": int(rows or 0),
            "totalEntries": int(weight or 0),
            "uniqueCustomers": int(customers or 0),
            "entriesBySource": {source: int(count) for source, count in by_source.all()},
        }

    async def annotate_order(self, store_id: int, order_id: str, annotations: Dict[str, Any]) -> int:
        """
        Merges ``annotations`` into the metadata of every entry created for an order.
        Entry counts are left untouched.

        Returns:
            int: Number of annotated entries
        """
        result = await self.session.execute(
            select(Entry).where(Entry.store_id == store_id, Entry.order_id == str(order_id))
        )
        entries = list(result.scalars().all())
        for entry in entries:
            # Reassign so that the JSON column is flagged as modified
            entry.meta = {**(entry.meta or {}), **annotations}

        if not entries:
            return 0

        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to annotate entries for order {order_id}: {e}")
            raise StorageError("Error updating entries", {"orderId": order_id}) from e
        return len(entries)
