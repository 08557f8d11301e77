"""FastAPI application entry-point for the Luisterslim quota service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from quota_engine.catalog import build_catalog
from quota_engine.config import load_catalog_settings
from quota_engine.errors import (
    BillingUnavailableError,
    QuotaExceededError,
    UnprovisionedAccountError,
    VerificationRejectedError,
)
from quota_engine.state.sqlite_adapter import create_local_tables
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import dispose_engine, init_engine
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import configure_structured_logging
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import billing, health, reconciliation, retention, usage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create ledger tables if they do not exist (SQLite local mode;
      production should use migrations).
    - Build the plan catalog and the Stripe gateway once and attach them to
      ``app.state`` for dependency injection.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.create_tables and is_local:
        await create_local_tables(engine)
        logger.info("Ledger tables ensured (local SQLite)")

    app.state.catalog = build_catalog(load_catalog_settings())
    logger.info(
        "Plan catalog built: %d plan(s), %d top-up(s)",
        len(app.state.catalog.get_plans()),
        len(app.state.catalog.get_top_ups()),
    )

    if settings.billing_enabled:
        from api.services.stripe_gateway import StripeBillingGateway

        app.state.billing_gateway = StripeBillingGateway(settings)
        logger.info("Stripe billing gateway initialised")
    else:
        app.state.billing_gateway = None
        logger.info("Billing disabled; client claims cannot be verified")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Luisterslim Quota API",
        description="Usage quotas, top-ups and subscription billing for transcription minutes.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Idempotency-Key",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware, secret=settings.auth_secret)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(retention.router, prefix="/api/v1")
    app.include_router(reconciliation.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "detail": "Quota exceeded",
                "code": "quota_exceeded",
                "requested_ms": exc.requested_ms,
                "remaining_ms": exc.remaining_ms,
                "quota_ms": exc.quota_ms,
            },
        )

    @app.exception_handler(UnprovisionedAccountError)
    async def unprovisioned_handler(request: Request, exc: UnprovisionedAccountError) -> JSONResponse:
        logger.warning("Unprovisioned account on %s: %s", request.url.path, exc.account_id)
        return JSONResponse(
            status_code=409,
            content={"detail": "Account has no plan assignment", "code": "unprovisioned"},
        )

    @app.exception_handler(VerificationRejectedError)
    async def verification_rejected_handler(request: Request, exc: VerificationRejectedError) -> JSONResponse:
        logger.warning("Billing verification rejected on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "code": "verification_rejected"},
        )

    @app.exception_handler(BillingUnavailableError)
    async def billing_unavailable_handler(request: Request, exc: BillingUnavailableError) -> JSONResponse:
        logger.error("Billing system unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Billing system unavailable, retry later", "code": "billing_unavailable"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc) or "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
