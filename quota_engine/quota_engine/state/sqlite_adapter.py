"""SQLite backend for local runs, the CLI and the test suite.

The ledger relies on two statements only, ``INSERT ... ON CONFLICT DO
NOTHING`` and a conditional ``UPDATE``; SQLite supports both, so the
same repositories run unchanged.  Differences from PostgreSQL:

* one writer at a time; concurrent debits queue on the busy timeout
  instead of row locks
* the schema is created in place by :func:`create_local_tables`
* ``DateTime`` columns come back naive; they always hold UTC
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = ".luisterslim/ledger.db"

# Seconds a writer waits for the database lock before failing.
BUSY_TIMEOUT_SECONDS = 15

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
)


def get_local_engine(db_path: Path | str = DEFAULT_LEDGER_PATH) -> AsyncEngine:
    """Open (creating directories as needed) the SQLite ledger at *db_path*.

    ``":memory:"`` gives a throwaway database.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("SQLite ledger engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing ledger tables.  Safe to call on every start."""
    from quota_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger schema verified")
