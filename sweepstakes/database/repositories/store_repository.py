from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from sweepstakes.database.models import Store
from sweepstakes.errors import ValidationError, StorageError, StoreNotFoundError
from sweepstakes.utils.cache import Cache, store_cache


logger = logging.getLogger(__name__)


def normalize_shop_domain(shop_domain: str) -> str:
    return (shop_domain or "").strip().lower()


class StoreRepository:
    """
    Store lookups. Resolving a shop domain to a store id goes through a TTL
    cache, since every purchase webhook needs it.
    """

    def __init__(self, session: AsyncSession, cache: Cache = store_cache):
        self.session = session
        self.cache = cache

    @staticmethod
    def _cache_key(shop_domain: str) -> str:
        return f"store:domain:{shop_domain}"

    async def create(self, name: str, shop_domain: Optional[str] = None) -> Store:
        domain = normalize_shop_domain(shop_domain) or None
        store = Store(name=name, shop_domain=domain)
        self.session.add(store)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ValidationError("Shop domain is already registered", {"shopDomain": domain}) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError("Error creating store") from e
        await self.session.refresh(store)
        if domain:
            await self.cache.delete(self._cache_key(domain))
        return store

    async def get_by_id(self, store_id: int) -> Optional[Store]:
        result = await self.session.execute(select(Store).where(Store.id == store_id))
        return result.scalar_one_or_none()

    async def get_id_by_domain(self, shop_domain: str) -> Optional[int]:
        domain = normalize_shop_domain(shop_domain)
        if not domain:
            return None

        async def load() -> Optional[int]:
            result = await self.session.execute(select(Store.id).where(Store.shop_domain == domain))
            return result.scalar_one_or_none()

        return await self.cache.get_or_compute(self._cache_key(domain), load)

    async def change_domain(self, store_id: int, shop_domain: Optional[str]) -> Store:
        store = await self.get_by_id(store_id)
        if store is None:
            raise StoreNotFoundError(store_id=store_id)
        old_domain = store.shop_domain
        store.shop_domain = normalize_shop_domain(shop_domain) or None
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ValidationError("Shop domain is already registered", {"shopDomain": shop_domain}) from e
        for domain in (old_domain, store.shop_domain):
            if domain:
                await self.cache.delete(self._cache_key(domain))
        logger.info(f"Store {store_id} domain changed from {old_domain} to {store.shop_domain}")
        return store
