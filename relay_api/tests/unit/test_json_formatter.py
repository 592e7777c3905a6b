"""Unit tests for the structured JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

from relay_api.middleware.json_formatter import JSONFormatter
from relay_api.middleware.logging import CorrelationLoggingFilter, _correlation_id_var, get_correlation_id


def _record(msg: str, *args, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("relay_api.access", logging.INFO, __file__, 1, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        line = JSONFormatter().format(_record("hello %s", "world"))
        payload = json.loads(line)

        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "relay_api.access"
        assert payload["timestamp"].endswith("+00:00")
        assert "\n" not in line

    def test_request_context_included(self) -> None:
        payload = json.loads(JSONFormatter().format(_record("request completed", request={"path": "/health"})))
        assert payload["request"] == {"path": "/health"}

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("failed", exc_info=sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_relay_context_fields_promoted(self) -> None:
        record = _record(
            "Domain event %d processed",
            41,
            tenant_id="t1",
            event_id=41,
            event_type="order.closed",
            correlation_id="corr-1",
        )
        payload = json.loads(JSONFormatter().format(record))

        assert payload["tenant_id"] == "t1"
        assert payload["event_id"] == 41
        assert payload["event_type"] == "order.closed"
        assert payload["correlation_id"] == "corr-1"
        assert "cursor" not in payload

    def test_empty_context_omitted(self) -> None:
        payload = json.loads(JSONFormatter().format(_record("idle", correlation_id="")))
        assert "correlation_id" not in payload

    def test_location_on_warnings(self) -> None:
        record = _record("slow poll")
        record.levelno = logging.WARNING
        record.levelname = "WARNING"
        payload = json.loads(JSONFormatter().format(record))
        assert payload["location"].endswith(":1")


class TestCorrelationLoggingFilter:
    def test_injects_current_correlation_id(self) -> None:
        token = _correlation_id_var.set("corr-9")
        try:
            record = _record("inside request")
            assert CorrelationLoggingFilter().filter(record) is True
        finally:
            _correlation_id_var.reset(token)

        assert record.correlation_id == "corr-9"
        assert get_correlation_id() == ""

    def test_explicit_value_kept(self) -> None:
        record = _record("access", correlation_id="from-extra")
        CorrelationLoggingFilter().filter(record)
        assert record.correlation_id == "from-extra"
