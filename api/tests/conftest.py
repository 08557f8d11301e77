"""Shared fixtures for Luisterslim API tests.

Every test runs the real application against its own SQLite ledger under
``tmp_path``.  The lifespan is not run by ``ASGITransport``, so the
``app`` fixture performs the same wiring: engine, tables, catalog and
billing gateway.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# Set the token secret BEFORE importing application modules so the
# AuthenticationMiddleware signs and checks with a known key.
_TEST_AUTH_SECRET = "test-secret-key-for-luisterslim-tests"
os.environ["API_AUTH_SECRET"] = _TEST_AUTH_SECRET

from api.config import APISettings
from api.dependencies import dispose_engine, get_settings, init_engine
from api.main import create_app
from api.security import TokenManager
from fastapi import FastAPI
from quota_engine.catalog import PlanCatalog, build_catalog
from quota_engine.config import CatalogSettings
from quota_engine.state.sqlite_adapter import create_local_tables

ACCOUNT_ID = "acct-api-1"

# ---------------------------------------------------------------------------
# Settings and catalog
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return settings pointing at a per-test SQLite file, billing disabled."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api-ledger.db'}",
        auth_secret=SecretStr(_TEST_AUTH_SECRET),
        cors_origins=["http://localhost:3000"],
        billing_enabled=False,
        stripe_secret_key=SecretStr("sk_test_xxx"),
        stripe_webhook_secret=SecretStr("whsec_test_xxx"),
        verify_client_claims=True,
    )


@pytest.fixture()
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


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def app(test_settings: APISettings, catalog: PlanCatalog) -> AsyncGenerator[FastAPI, None]:
    """Create the app wired to a fresh SQLite ledger.

    ``app.state.billing_gateway`` is ``None``; tests that exercise Stripe
    paths assign a mock gateway.
    """
    engine = init_engine(test_settings)
    await create_local_tables(engine)

    application = create_app()
    application.state.catalog = catalog
    application.state.billing_gateway = None
    application.dependency_overrides[get_settings] = lambda: test_settings

    yield application

    application.dependency_overrides.clear()
    await dispose_engine()


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def mock_gateway() -> AsyncMock:
    """A billing gateway mock; tests set the return values they need."""
    gateway = AsyncMock()
    gateway.create_customer.return_value = "cus_new"
    gateway.create_ephemeral_key.return_value = "ek_test_secret"
    return gateway


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.fixture()
def token_manager() -> TokenManager:
    return TokenManager(SecretStr(_TEST_AUTH_SECRET))


@pytest.fixture()
def make_headers(token_manager: TokenManager) -> Callable[..., dict[str, str]]:
    """Return a helper producing bearer headers for any account."""

    def _headers(account_id: str = ACCOUNT_ID, **claims: str) -> dict[str, str]:
        token = token_manager.generate_token(account_id, **claims)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def auth_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    return make_headers(ACCOUNT_ID, email="ann@example.com", name="Ann de Vries")
