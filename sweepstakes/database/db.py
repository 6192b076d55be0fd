from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import BigInteger, Integer, event, text
import logging

from sweepstakes.config import settings


logger = logging.getLogger(__name__)

# Declarative base for all models
Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def build_async_url(database_url: str) -> str:
    """Switches a plain PostgreSQL URL to the asyncpg driver."""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql:"):
        return database_url.replace("postgresql:", "postgresql+asyncpg:", 1)
    return database_url


def engine_options(async_url: str) -> dict:
    if async_url.startswith("sqlite"):
        return {"echo": settings.DEBUG, "future": True}
    return {
        "echo": settings.DEBUG,
        "future": True,
        "pool_size": 20,
        "max_overflow": 40,
        "pool_timeout": 30,
        "pool_pre_ping": True,
        # PgBouncer in transaction mode does not support prepared statements
        "connect_args": {"statement_cache_size": 0},
    }


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def enforce_foreign_keys(async_engine) -> None:
    """
    SQLite ignores ON DELETE CASCADE unless foreign keys are switched on for
    every connection. Must run before the engine opens its first connection.
    """
    if async_engine.dialect.name != "sqlite":
        return
    sync_engine = async_engine.sync_engine
    if not event.contains(sync_engine, "connect", _enable_sqlite_foreign_keys):
        event.listen(sync_engine, "connect", _enable_sqlite_foreign_keys)


async_database_url = build_async_url(settings.DATABASE_URL)

engine = create_async_engine(async_database_url, **engine_options(async_database_url))
enforce_foreign_keys(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db(bind=None):
    """
    Creates the tables and the supporting indexes.

    Args:
        bind: Async engine to use, defaults to the module engine
    """
    # Models must be imported so that they are registered on Base.metadata
    from sweepstakes.database import models  # noqa: F401

    bind = bind or engine
    enforce_foreign_keys(bind)
    logger.info("Initializing database schema")
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_indexes(conn)
    logger.info("Database schema is ready")


async def create_indexes(conn):
    """
    Creates secondary indexes that are not declared on the models.
    """
    try:
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_entries_promo_created ON entries(promo_id, created_at)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_entries_store_id ON entries(store_id)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_promos_store_status ON promos(store_id, status)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_winners_store_id ON winners(store_id)"))
    except Exception as e:
        logger.warning(f"Failed to create secondary indexes: {e}")


async def get_session() -> AsyncSession:
    """
    FastAPI dependency that yields a database session.

    Yields:
        AsyncSession: Session bound to the module engine
    """
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
