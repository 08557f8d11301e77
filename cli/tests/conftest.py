"""Shared fixtures for CLI tests.

Each test points the CLI at its own SQLite ledger with ``--database-url``
and seeds it through the engine's repositories.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
from quota_engine.state.database import get_engine, get_session
from quota_engine.state.sqlite_adapter import create_local_tables
from typer.testing import CliRunner


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli-ledger.db'}"


@pytest.fixture()
def seed(database_url: str) -> Callable[[Callable[[Any], Awaitable[Any]]], Any]:
    """Return a helper that runs ``work(session)`` against the test ledger in one transaction."""

    def _seed(work: Callable[[Any], Awaitable[Any]]) -> Any:
        async def _run() -> Any:
            engine = get_engine(database_url)
            try:
                await create_local_tables(engine)
                async with get_session(engine) as session:
                    return await work(session)
            finally:
                await engine.dispose()

        return asyncio.run(_run())

    return _seed
