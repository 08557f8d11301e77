"""Shared fixtures for quota engine tests.

Every test gets its own SQLite file under ``tmp_path`` so that tests which
open several sessions (concurrency, replay) see one shared database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from quota_engine.catalog import PlanCatalog, build_catalog
from quota_engine.config import CatalogSettings
from quota_engine.state.repository import PlanAssignmentRepository
from quota_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

ACCOUNT_ID = "acct-1"


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "ledger.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as sess:
        yield sess


@pytest.fixture
def catalog() -> PlanCatalog:
    return build_catalog(
        CatalogSettings(
            stripe_price_plan_basic_id="price_starter",
            stripe_price_plan_starter="price_pro",
            stripe_price_plan_team="price_team",
            stripe_price_topup_60="price_topup_60",
            stripe_price_topup_180="price_topup_180",
        )
    )


async def _provision(
    session: AsyncSession,
    account_id: str = ACCOUNT_ID,
    *,
    plan_code: str = "free",
    base_quota_ms: int = 600 * 60_000,
    renew_day: int = 1,
    timezone: str = "UTC",
) -> None:
    """Create a plan assignment directly, bypassing quota resolution."""
    await PlanAssignmentRepository(session, account_id).ensure_default(
        plan_code,
        base_quota_ms,
        renew_day=renew_day,
        timezone=timezone,
    )


@pytest.fixture
def provision():
    """Return a coroutine function that provisions a plan assignment."""
    return _provision
