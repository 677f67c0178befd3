"""Async engine and session plumbing for the alerting tables.

The engine is built on first use so it binds to whichever event loop is
running the workers (asyncpg connections cannot cross loops).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from alerting.config import settings

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options() -> dict[str, Any]:
    if settings.testing:
        # Test event loops come and go; pooled connections would outlive them
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Return the shared engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url, echo=settings.db_echo, **_engine_options()
        )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        # Workers keep using rows after commit; don't expire them
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session for one workflow run.

    Uncommitted work is rolled back when the block raises.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def close_database() -> None:
    """Dispose the engine; the next ``get_engine`` call builds a new one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def restore_session(db: AsyncSession) -> None:
    """Roll back and reload every instance the rollback expired.

    Expired attributes cannot be lazy-loaded on an async session, so
    loops that keep going after a failure reload what they hold first.
    """
    await db.rollback()
    for instance in list(db.identity_map.values()):
        await db.refresh(instance)
