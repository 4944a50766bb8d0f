"""Async engine and session factory management."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_gatekeeper.storage.models import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine for a database URL.

    Args:
        url: SQLAlchemy URL (``postgresql+asyncpg://`` or ``sqlite+aiosqlite://``).
        echo: Log every SQL statement.
    """
    options: dict[str, object] = {"echo": echo}
    if not url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_recycle=3600)
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory bound to an engine.

    Sessions keep loaded attributes after commit so DTOs can be built from
    them outside the unit of work.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
