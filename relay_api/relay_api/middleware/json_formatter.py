"""Single-line JSON log formatter for the relay.

Enabled with ``RELAY_STRUCTURED_LOGGING=true``.  Besides the standard
fields, each line carries whichever relay context the record was logged
with: the request's correlation id (injected by
:class:`~relay_api.middleware.logging.CorrelationLoggingFilter`) and the
``tenant_id``, ``event_id``, ``event_type`` and ``cursor`` passed through
``extra=``.

Example line::

    {"timestamp": "2026-05-15T12:34:56.789012+00:00", "level": "INFO",
     "logger": "relay_api.services.event_dispatcher",
     "message": "Domain event 41 processed (order.closed)",
     "correlation_id": "9d1c...", "tenant_id": "t1", "event_id": 41,
     "event_type": "order.closed"}
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Record attributes copied to the top level when set and non-empty.
RELAY_CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "tenant_id",
    "event_id",
    "event_type",
    "cursor",
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON with relay context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in RELAY_CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "":
                payload[field] = value

        # Access log records from RequestLoggingMiddleware.
        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.levelno >= logging.WARNING:
            payload["location"] = f"{record.module}:{record.lineno}"

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
