"""
Database configuration and session management

Two tables live here: shipping_configs (one business-settings row per
carrier) and shipment_history (one row per purchased label, polled by the
tracking sync). Request handlers get a session from get_db; the tracking sync
opens its own with get_db_session and commits once per cycle.

SQLite URLs (local tooling) get no pool arguments because their dialect
rejects them.
"""
import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from storefront.core.config import settings

logger = logging.getLogger(__name__)

pool_config = {}

if settings.DATABASE_URL.startswith("sqlite"):
    pool_config = {}
elif settings.ENVIRONMENT == "production":
    pool_config = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }
else:
    # API workers plus one tracking sync session
    pool_config = {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    **pool_config,
)

# Records stay readable after commit; routes serialize them post-commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def create_shipping_tables() -> None:
    """Create shipping_configs and shipment_history if they do not exist."""
    from storefront.models import CarrierConfig, ShipmentRecord  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Shipping tables ready")


async def get_db() -> AsyncSession:
    """Request-scoped session. A label purchase and its history row commit together."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session():
    """
    Session outside a request, used by the tracking sync.

    Usage:
        async with get_db_session() as db:
            await run_tracking_sync(db)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
