"""Single-line JSON log formatter.

Activate by setting ``API_STRUCTURED_LOGGING=true``.  The application then
replaces the root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-03-02T09:15:00.120000+00:00",
        "level": "WARNING",
        "logger": "quota_engine.quota",
        "message": "Quota exceeded: account=... period=2026-03 ...",
        "request": { ... },          // access log entries only
        "exc_info": "Traceback ..."  // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Set by RequestLoggingMiddleware via ``extra={"request": ...}``.
        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Replace the root logger's handlers with one JSON ``StreamHandler``."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
