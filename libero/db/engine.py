"""Database engine, session factory and schema bootstrap."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from libero.config import settings

logger = logging.getLogger(__name__)

engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
)

# Services open their own transactions; objects stay usable after commit.
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create any missing tables. Alembic owns schema changes after that."""
    from libero.db.base import Base

    # Every model has to be imported before metadata is complete
    from libero.models import category, pack, subscription, transaction, user, webhook_event  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured (%d tables).", len(Base.metadata.tables))


async def dispose_db() -> None:
    await engine.dispose()
