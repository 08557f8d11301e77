"""Access logging for the control plane."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Bearer tokens, session cookies and Stripe webhook signatures never reach the log.
_MASKED_HEADERS = frozenset({"authorization", "cookie", "stripe-signature"})


def _loggable_headers(request: Request) -> dict[str, str]:
    return {key: "***" if key.lower() in _MASKED_HEADERS else value for key, value in request.headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one ``api.access`` record per request.

    The record carries the account resolved by the authentication
    middleware (``anonymous`` otherwise) and a correlation id, taken from
    the ``X-Correlation-ID`` request header or generated, which is echoed
    on the response.  Quota rejections (402) and refused claims (422)
    therefore show up as warnings next to the engine's own log lines.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "account_id": getattr(request.state, "account_id", "anonymous"),
                "headers": _loggable_headers(request),
            }
            logger.log(_level_for(status_code), "request completed", extra={"request": payload})
