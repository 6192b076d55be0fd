import asyncio

import httpx
import pytest

from sweepstakes.database.repositories import StoreRepository
from sweepstakes.errors import ValidationError
from sweepstakes.utils.cache import Cache, start_cache_cleanup_task
from sweepstakes.webapp.app import setup_webapp
from sweepstakes.webapp.middlewares.rate_limiter import RateLimiter, RateLimiterMiddleware


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


async def test_cache_entries_expire():
    clock = FakeClock()
    cache = Cache(default_ttl=10, clock=clock)
    await cache.set("a", 1)
    await cache.set("b", 2, ttl=100)

    assert await cache.get("a") == 1
    clock.now += 10
    assert await cache.get("a") is None
    assert await cache.get("b") == 2
    assert cache.stats["hits"] == 2
    assert cache.stats["misses"] == 1

    clock.now += 100
    assert await cache.cleanup() == 1
    assert cache.data == {}


async def test_get_or_compute_skips_none():
    cache = Cache(default_ttl=10, clock=FakeClock())
    calls = []

    async def missing():
        calls.append("missing")
        return None

    async def found():
        calls.append("found")
        return 42

    assert await cache.get_or_compute("k", missing) is None
    assert await cache.get_or_compute("k", found) == 42
    assert await cache.get_or_compute("k", found) == 42
    assert calls == ["missing", "found"]


async def test_cleanup_task_stops_on_cancel():
    clock = FakeClock()
    cache = Cache(default_ttl=1, clock=clock)
    await cache.set("k", "v")
    clock.now += 5

    task = asyncio.create_task(start_cache_cleanup_task(cache, interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    await task

    assert "k" not in cache.data


async def test_store_domain_lookup_is_cached_and_invalidated(session):
    cache = Cache(default_ttl=60, clock=FakeClock())
    stores = StoreRepository(session, cache=cache)
    store = await stores.create("Demo", " Shop.MyShopify.com ")

    assert store.shop_domain == "shop.myshopify.com"
    assert await stores.get_id_by_domain("SHOP.myshopify.com") == store.id
    assert await stores.get_id_by_domain("shop.myshopify.com") == store.id
    assert cache.stats["hits"] == 1

    await stores.change_domain(store.id, "renamed.myshopify.com")
    assert await stores.get_id_by_domain("shop.myshopify.com") is None
    assert await stores.get_id_by_domain("renamed.myshopify.com") == store.id


async def test_duplicate_shop_domain(session):
    stores = StoreRepository(session, cache=Cache(clock=FakeClock()))
    await stores.create("One", "same.myshopify.com")
    with pytest.raises(ValidationError):
        await stores.create("Two", "same.myshopify.com")


def test_rate_limiter_window():
    clock = FakeClock()
    limiter = RateLimiter(window_size=60, max_requests=2, clock=clock)

    assert limiter.is_allowed("ip:1")[0] is True
    allowed, info = limiter.is_allowed("ip:1")
    assert allowed is True and info["remaining"] == 0
    allowed, info = limiter.is_allowed("ip:1")
    assert allowed is False
    assert info["time_remaining"] == 60

    assert limiter.is_allowed("ip:2")[0] is True

    clock.now += 60
    assert limiter.is_allowed("ip:1")[0] is True

    clock.now += 7200
    limiter.cleanup()
    assert list(limiter.clients) == []


async def test_draw_endpoint_is_rate_limited():
    app = setup_webapp(rate_limits=True)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        statuses = [(await client.post("/api/winners/draw", json={})).status_code for _ in range(6)]
        health = await client.get("/health")

    assert statuses == [400] * 5 + [429]
    assert health.status_code == 200


def test_middleware_cleanup_sweeps_every_limiter():
    clock = FakeClock()
    middleware = RateLimiterMiddleware(
        app=None,
        path_limits={"/api/entries/manual": (60, 10), "/api/winners/draw": (60, 5)},
        clock=clock,
    )
    middleware.default_limiter.is_allowed("ip:1")
    middleware.path_limiters["/api/entries/manual"].is_allowed("ip:2")
    middleware.path_limiters["/api/winners/draw"].is_allowed("ip:3")

    clock.now += 7200
    middleware.cleanup()

    assert list(middleware.default_limiter.clients) == []
    assert all(list(limiter.clients) == [] for limiter in middleware.path_limiters.values())
