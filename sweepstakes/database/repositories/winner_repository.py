from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone
from typing import List, Optional
import logging

from sweepstakes.database.models import Winner
from sweepstakes.errors import WinnerAlreadyExistsError, WinnerNotFoundError, StorageError


logger = logging.getLogger(__name__)


class WinnerRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_promo(self, promo_id: int) -> Optional[Winner]:
        result = await self.session.execute(select(Winner).where(Winner.promo_id == promo_id))
        return result.scalar_one_or_none()

    async def exists_for_promo(self, promo_id: int) -> bool:
        result = await self.session.execute(select(Winner.id).where(Winner.promo_id == promo_id))
        return result.first() is not None

    async def get_by_id(self, winner_id: int) -> Optional[Winner]:
        result = await self.session.execute(select(Winner).where(Winner.id == winner_id))
        return result.scalar_one_or_none()

    async def list_for_store(self, store_id: int, limit: int = 50) -> List[Winner]:
        result = await self.session.execute(
            select(Winner).where(Winner.store_id == store_id).order_by(Winner.drawn_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def create(self, winner: Winner) -> Winner:
        """
        Inserts the winner of a promo.

        Raises:
            WinnerAlreadyExistsError: the unique constraint on promo_id rejected the row
            StorageError: any other storage failure
        """
        promo_id = winner.promo_id
        self.session.add(winner)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if await self.exists_for_promo(promo_id):
                raise WinnerAlreadyExistsError(promo_id) from e
            logger.error(f"Winner insert rejected by a constraint for promo {promo_id}: {e}")
            raise StorageError("Error creating winner record", {"promoId": promo_id}) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Winner insert failed for promo {promo_id}: {e}")
            raise StorageError("Error creating winner record", {"promoId": promo_id}) from e

        await self.session.refresh(winner)
        return winner

    async def set_notified(self, winner_id: int, notified: bool) -> Winner:
        winner = await self.get_by_id(winner_id)
        if winner is None:
            raise WinnerNotFoundError(winner_id)
        winner.notified = notified
        winner.notified_at = datetime.now(timezone.utc) if notified else None
        return await self._save(winner)

    async def set_claimed(self, winner_id: int, claimed: bool) -> Winner:
        winner = await self.get_by_id(winner_id)
        if winner is None:
            raise WinnerNotFoundError(winner_id)
        winner.claimed = claimed
        winner.claimed_at = datetime.now(timezone.utc) if claimed else None
        return await self._save(winner)

    async def _save(self, winner: Winner) -> Winner:
        winner_id = winner.id
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError("Error updating winner", {"winnerId": winner_id}) from e
        await self.session.refresh(winner)
        return winner
