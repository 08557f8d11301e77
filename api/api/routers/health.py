"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a readiness probe
registered at the application root (no version prefix) so that
orchestrators and load-balancers can gate traffic independently of the
API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so that load-balancers see the service as alive; the
    ``db`` field reports whether the ledger database is reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(request: Request, session: SessionDep) -> JSONResponse:
    """Readiness probe.

    Checks:
    1. **Database connectivity** (executes ``SELECT 1``).
    2. **Plan catalog** built during startup.
    3. **Billing gateway** configured (non-critical; ``degraded`` when
       billing is enabled but no gateway exists).

    Returns HTTP 200 with ``"ready"`` or ``"degraded"``, or HTTP 503 with
    ``"not_ready"`` when the database or catalog is unavailable.
    """
    checks: dict[str, str] = {"db": "ok", "catalog": "ok", "billing": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    if getattr(request.app.state, "catalog", None) is None:
        checks["catalog"] = "unavailable"
        overall = "not_ready"

    if getattr(request.app.state, "billing_gateway", None) is None:
        checks["billing"] = "disabled"

    status_code = 200 if overall != "not_ready" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall,
            "version": __version__,
            "checks": checks,
        },
    )
