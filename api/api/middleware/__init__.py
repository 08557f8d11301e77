"""Middleware components for the Luisterslim API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter, configure_structured_logging
from api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "configure_structured_logging",
]
