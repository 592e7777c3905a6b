"""Request access logging with correlation ids.

The correlation id of the request being served is kept in a context
variable so that every log line emitted while handling it, including the
service and relay loggers, can be tied back to the access line.
"""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("relay_api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-signature"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"
# Provider webhooks carry their own delivery id.
_REQUEST_ID_HEADER: str = "x-request-id"

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Return the correlation id of the current request, or ``""`` outside one."""
    return _correlation_id_var.get()


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    return {key: (_MASK if key.lower() in _SENSITIVE_HEADERS else value) for key, value in request.headers.items()}


def _correlation_id(request: Request) -> str:
    return (
        request.headers.get(_CORRELATION_HEADER.lower())
        or request.headers.get(_REQUEST_ID_HEADER)
        or str(uuid.uuid4())
    )


class CorrelationLoggingFilter(logging.Filter):
    """Set ``correlation_id`` on records that were not given one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = _correlation_id_var.get()  # type: ignore[attr-defined]
        return True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code and duration.

    Each request is tagged with a correlation id taken from
    ``X-Correlation-ID`` (or the provider's ``x-request-id``), generated
    when absent, and echoed back as a response header.  For streaming
    responses the duration covers the time to first byte.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = _correlation_id(request)
        token = _correlation_id_var.set(correlation_id)
        request.state.correlation_id = correlation_id
        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "headers": _safe_headers(request),
            }
            extra = {
                "request": log_payload,
                "correlation_id": correlation_id,
                "tenant_id": getattr(request.state, "tenant_id", None) or "anonymous",
            }
            if status_code >= 500:
                logger.error("request completed", extra=extra)
            elif status_code >= 400:
                logger.warning("request completed", extra=extra)
            else:
                logger.info("request completed", extra=extra)
            _correlation_id_var.reset(token)
