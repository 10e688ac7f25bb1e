"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object that aggregators can
index without regex parsing.  Enabled with ``API_STRUCTURED_LOGGING=true``
(see :func:`api.logging_config.configure_logging`).

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "api.access",
        "message": "request completed",
        "request": { ... },        // present when emitted by RequestLoggingMiddleware
        "context": { ... },        // present when the caller passed extra={"context": ...}
        "exc_info": "Traceback ..." // present only on exceptions
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
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        # Domain context such as agency_id, event_id or booking_id.
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
