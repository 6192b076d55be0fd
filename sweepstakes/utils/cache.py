"""
In-memory TTL cache.

Holds short-lived lookups (store ids by shop domain) so that every webhook
delivery does not hit the database. Entries expire after their TTL and can be
invalidated explicitly by the code that owns the underlying data.
"""

import time
import asyncio
import logging
from typing import Dict, Any, Optional, Callable, Awaitable, TypeVar

from sweepstakes.config import settings

T = TypeVar('T')

logger = logging.getLogger(__name__)


class Cache:
    """
    In-memory cache with per-entry TTL.
    """

    def __init__(self, default_ttl: int = 60, clock: Callable[[], float] = time.time):
        """
        Args:
            default_ttl (int): Time to live for entries, in seconds
            clock (Callable[[], float]): Time source, replaceable in tests
        """
        self.default_ttl = default_ttl
        self.clock = clock
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "cleanups": 0,
        }

    async def get(self, key: str) -> Optional[Any]:
        """
        Returns the cached value, or None when the key is missing or expired.
        """
        if key in self.data:
            if self.clock() < self.expiry[key]:
                self.stats["hits"] += 1
                return self.data[key]
            await self.delete(key)

        self.stats["misses"] += 1
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self.data[key] = value
        self.expiry[key] = self.clock() + ttl
        self.stats["sets"] += 1

    async def delete(self, key: str) -> bool:
        """
        Removes a key from the cache.

        Returns:
            bool: True if the key was present
        """
        if key not in self.data:
            return False
        del self.data[key]
        self.expiry.pop(key, None)
        self.stats["deletes"] += 1
        return True

    async def clear(self) -> None:
        self.data.clear()
        self.expiry.clear()

    async def cleanup(self) -> int:
        """
        Drops every expired entry.

        Returns:
            int: Number of removed entries
        """
        now = self.clock()
        expired_keys = [key for key, expiry in self.expiry.items() if now >= expiry]
        for key in expired_keys:
            await self.delete(key)

        if expired_keys:
            self.stats["cleanups"] += 1
            logger.debug(f"Removed {len(expired_keys)} expired cache entries")
        return len(expired_keys)

    async def get_or_compute(
        self,
        key: str,
        compute_func: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None
    ) -> T:
        """
        Returns the cached value or computes and caches it.
        None results are not cached.
        """
        value = await self.get(key)
        if value is not None:
            return value

        value = await compute_func()
        if value is not None:
            await self.set(key, value, ttl)
        return value


store_cache = Cache(default_ttl=settings.CACHE_TTL["store"])


async def start_cache_cleanup_task(cache: Cache = store_cache, interval: Optional[int] = None):
    """
    Periodically sweeps expired entries until cancelled.
    """
    interval = interval or settings.CACHE_CLEANUP_INTERVAL
    logger.info("Cache cleanup task started")
    while True:
        try:
            await cache.cleanup()
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}")

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Cache cleanup task cancelled")
            break
