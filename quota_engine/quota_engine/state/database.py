"""Engine and session plumbing for the usage ledger.

The URL scheme picks the backend: ``sqlite+aiosqlite://`` goes through
:mod:`quota_engine.state.sqlite_adapter`, anything else (in practice
``postgresql+asyncpg://``) gets a pooled engine.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# One sessionmaker per engine, keyed by id(engine).
_factories: dict[int, async_sessionmaker[AsyncSession]] = {}

# Server-side guards for the pooled engine.  The conditional debit UPDATE
# waits on row locks, so lock_timeout bounds how long a debit can queue.
_PG_SERVER_SETTINGS = {
    "statement_timeout": "30000",
    "lock_timeout": "10000",
}


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a ``sqlite+aiosqlite:///path`` URL.

    URLs without a path (``sqlite+aiosqlite://``) map to ``:memory:``.
    """
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        SQLAlchemy URL of the ledger database.
    pool_size, max_overflow:
        Connection pool sizing.  Only used for PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        from quota_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("Ledger engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Run one ledger transaction.

    Commits when the block exits normally, rolls back and re-raises
    otherwise.  Repositories only flush; this is where work is committed.
    """
    factory = _factories.get(id(engine))
    if factory is None:
        factory = _factories[id(engine)] = async_sessionmaker(engine, expire_on_commit=False)

    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()
