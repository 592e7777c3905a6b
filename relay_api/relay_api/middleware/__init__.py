"""Middleware components for the posrelay API."""

from __future__ import annotations

from relay_api.middleware.json_formatter import JSONFormatter
from relay_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
