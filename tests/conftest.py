import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["WEBHOOK_SECRET"] = "test-secret"
os.environ["WEBHOOK_SIGNATURE_BYPASS"] = "false"

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sweepstakes.database.db import init_db, get_session
from sweepstakes.database.repositories import PromoRepository, StoreRepository
from sweepstakes.services.notifications import Notifier
from sweepstakes.utils.cache import store_cache
from sweepstakes.webapp.app import setup_webapp


SHOP_DOMAIN = "demo-shop.myshopify.com"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.confirmations = []
        self.winners = []
        self.alerts = []

    async def entry_confirmed(self, email, promo_title, entry_id, entry_count):
        self.confirmations.append((email, promo_title, entry_id, entry_count))

    async def winner_selected(self, email, promo_title, prize_description, entry_id):
        self.winners.append((email, promo_title, prize_description, entry_id))

    async def admin_alert(self, subject, message, details=None):
        self.alerts.append((subject, message, details))


class FailingNotifier(Notifier):
    async def entry_confirmed(self, *args, **kwargs):
        raise RuntimeError("smtp down")

    async def winner_selected(self, *args, **kwargs):
        raise RuntimeError("smtp down")

    async def admin_alert(self, *args, **kwargs):
        raise RuntimeError("smtp down")


@pytest.fixture(autouse=True)
def clear_store_cache():
    store_cache.data.clear()
    store_cache.expiry.clear()
    yield
    store_cache.data.clear()
    store_cache.expiry.clear()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def store(session):
    return await StoreRepository(session).create("Demo Shop", SHOP_DOMAIN)


@pytest.fixture
def make_promo(session, store):
    async def factory(status="active", **fields):
        fields.setdefault("prize_description", "Gift card")
        title = fields.pop("title", "Summer Giveaway")
        repo = PromoRepository(session)
        promo = await repo.create(store.id, title, **fields)
        if status in ("active", "paused", "ended"):
            promo = await repo.set_status(promo.id, "active")
        if status in ("paused", "ended"):
            promo = await repo.set_status(promo.id, status)
        return promo
    return factory


@pytest.fixture
async def client(session_factory, notifier):
    app = setup_webapp(notifier=notifier, rate_limits=False)

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
