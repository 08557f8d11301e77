"""Bearer-token authentication for the control plane.

Every non-public request must carry ``Authorization: Bearer <token>``.
A valid token binds the caller's account to the request: ``sub`` becomes
``request.state.account_id``, and the optional ``email`` and ``name``
claims are kept for Stripe customer creation.  Expired tokens get 403,
anything else wrong with the header or token gets 401.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenManager

logger = logging.getLogger(__name__)

# Health checks, API docs and the Stripe webhook (authenticated by its signature).
PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)
_DOC_PREFIXES = ("/docs", "/redoc")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(_DOC_PREFIXES)


def _reject(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Resolve the calling account from a signed bearer token."""

    def __init__(self, app: Any, secret: SecretStr) -> None:
        super().__init__(app)
        self._tokens = TokenManager(secret)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or is_public_path(request.url.path):
            return await call_next(request)

        header = request.headers.get("authorization")
        if not header:
            return _reject(401, "Missing Authorization header")

        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _reject(401, "Authorization header must use Bearer scheme")

        try:
            claims = self._tokens.validate_token(token.strip())
        except PermissionError as exc:
            reason = str(exc)
            if reason == "Token has expired":
                return _reject(403, reason)
            logger.info("Rejected token on %s: %s", request.url.path, reason)
            return _reject(401, f"Invalid token: {reason}")

        request.state.account_id = claims.sub
        request.state.email = claims.email
        request.state.name = claims.name
        return await call_next(request)
