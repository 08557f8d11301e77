"""API router modules for the Luisterslim quota service."""

from __future__ import annotations

from api.routers import (
    billing,
    health,
    reconciliation,
    retention,
    usage,
)

__all__ = [
    "billing",
    "health",
    "reconciliation",
    "retention",
    "usage",
]
