"""FastAPI dependency injection for sessions, settings, the catalog and identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from quota_engine.catalog import PlanCatalog
from quota_engine.gateway import BillingGateway
from quota_engine.state.database import get_engine
from quota_engine.subscriptions import provision_default_plan
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by handlers that manage their own transaction (the Stripe webhook)
    rather than the request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped ``AsyncSession``.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Plan catalog and billing gateway (built once in the lifespan)
# ---------------------------------------------------------------------------


def get_catalog(request: Request) -> PlanCatalog:
    """Return the catalog the application was started with."""
    catalog = getattr(request.app.state, "catalog", None)
    if catalog is None:
        raise RuntimeError("Plan catalog has not been initialised. Ensure the lifespan built it.")
    return catalog


CatalogDep = Annotated[PlanCatalog, Depends(get_catalog)]


def get_billing_gateway(request: Request) -> BillingGateway | None:
    """Return the Stripe gateway, or ``None`` when billing is disabled."""
    return getattr(request.app.state, "billing_gateway", None)


GatewayDep = Annotated[BillingGateway | None, Depends(get_billing_gateway)]


def require_billing_gateway(gateway: GatewayDep) -> BillingGateway:
    if gateway is None:
        raise HTTPException(status_code=503, detail="Billing is not enabled")
    return gateway


RequiredGatewayDep = Annotated[BillingGateway, Depends(require_billing_gateway)]

# ---------------------------------------------------------------------------
# Account identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Account:
    """The authenticated caller."""

    account_id: str
    email: str | None = None
    name: str | None = None


def get_account_id(request: Request) -> str:
    """Extract account_id from authenticated request state."""
    account_id = getattr(request.state, "account_id", None)
    if account_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return account_id


AccountIdDep = Annotated[str, Depends(get_account_id)]


async def get_account(
    request: Request,
    account_id: AccountIdDep,
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
) -> Account:
    """Resolve the caller and make sure it has a plan assignment.

    First contact from an account provisions the catalog's default plan
    (insert-or-ignore, so concurrent first requests are harmless) with its
    periods in ``settings.default_timezone``.
    """
    if await provision_default_plan(session, catalog, account_id, settings.default_timezone):
        logger.info("First request from account %s; default plan assigned", account_id)
    return Account(
        account_id=account_id,
        email=getattr(request.state, "email", None),
        name=getattr(request.state, "name", None),
    )


AccountDep = Annotated[Account, Depends(get_account)]
