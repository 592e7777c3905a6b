"""Unit tests for the entitlement gate."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from relay_core.state.repository import EntitlementRepository

from relay_api.services.entitlement_service import (
    EntitlementDecision,
    EntitlementGate,
    entitlement_message,
    get_entitlement_gate,
    init_entitlement_gate,
)

GRACE_END = datetime(2026, 1, 8, tzinfo=UTC)


async def _seed(session_factory, status: str, *, grace_period_end: datetime | None = None) -> None:
    async with session_factory() as session:
        features = ["mercadopago"] if status in ("active", "grace_period") else []
        await EntitlementRepository(session, tenant_id="t1").upsert(status, features, grace_period_end)
        await session.commit()


async def _status(session_factory) -> str:
    async with session_factory() as session:
        row = await EntitlementRepository(session, tenant_id="t1").get()
        return row.subscription_status


class TestCheckEntitlement:
    """Gate decisions."""

    @pytest.mark.asyncio
    async def test_disabled_allows_everyone(self, session_factory) -> None:
        gate = EntitlementGate(session_factory, enabled=False)
        assert await gate.check_entitlement("nobody") == EntitlementDecision(True, "entitlement_disabled")

    @pytest.mark.asyncio
    async def test_no_row_denied(self, session_factory) -> None:
        gate = EntitlementGate(session_factory, enabled=True)
        assert await gate.check_entitlement("t1") == EntitlementDecision(False, "none")

    @pytest.mark.asyncio
    async def test_active_allowed(self, session_factory) -> None:
        await _seed(session_factory, "active")
        gate = EntitlementGate(session_factory, enabled=True)
        assert await gate.check_entitlement("t1") == EntitlementDecision(True, None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["past_due", "canceled", "expired", "none"])
    async def test_denied_statuses_report_status(self, session_factory, status: str) -> None:
        await _seed(session_factory, status)
        gate = EntitlementGate(session_factory, enabled=True)
        assert await gate.check_entitlement("t1") == EntitlementDecision(False, status)

    @pytest.mark.asyncio
    async def test_grace_period_inside_window_allowed(self, session_factory) -> None:
        await _seed(session_factory, "grace_period", grace_period_end=GRACE_END)
        gate = EntitlementGate(session_factory, enabled=True)

        decision = await gate.check_entitlement("t1", now=datetime(2026, 1, 5, tzinfo=UTC))

        assert decision == EntitlementDecision(True, None)
        await gate.drain()
        assert await _status(session_factory) == "grace_period"

    @pytest.mark.asyncio
    async def test_grace_period_without_end_allowed(self, session_factory) -> None:
        await _seed(session_factory, "grace_period")
        gate = EntitlementGate(session_factory, enabled=True)
        assert (await gate.check_entitlement("t1")).allowed is True

    @pytest.mark.asyncio
    async def test_lapsed_grace_period_expires(self, session_factory) -> None:
        await _seed(session_factory, "grace_period", grace_period_end=GRACE_END)
        gate = EntitlementGate(session_factory, enabled=True)

        decision = await gate.check_entitlement("t1", now=datetime(2026, 1, 9, tzinfo=UTC))
        assert decision == EntitlementDecision(False, "expired")

        await gate.drain()
        assert await _status(session_factory) == "expired"

        # Later checks read the persisted status; access is never restored.
        again = await gate.check_entitlement("t1", now=datetime(2026, 1, 5, tzinfo=UTC))
        assert again == EntitlementDecision(False, "expired")

    @pytest.mark.asyncio
    async def test_write_through_does_not_override_newer_status(self, session_factory) -> None:
        await _seed(session_factory, "grace_period", grace_period_end=GRACE_END)
        gate = EntitlementGate(session_factory, enabled=True)

        decision = await gate.check_entitlement("t1", now=datetime(2026, 1, 9, tzinfo=UTC))
        assert decision.reason == "expired"
        # A billing event renews the subscription before the correction runs.
        await _seed(session_factory, "active")

        await gate.drain()
        assert await _status(session_factory) == "active"

    @pytest.mark.asyncio
    async def test_store_failure_reports_unavailable(self) -> None:
        def broken_factory():
            raise ConnectionError("database down")

        gate = EntitlementGate(broken_factory, enabled=True)
        assert await gate.check_entitlement("t1") == EntitlementDecision(False, "unavailable")

    @pytest.mark.asyncio
    async def test_failed_write_through_is_logged_not_raised(self, session_factory, caplog) -> None:
        await _seed(session_factory, "grace_period", grace_period_end=GRACE_END)
        calls = {"n": 0}

        def flaky_factory():
            calls["n"] += 1
            if calls["n"] > 1:
                raise ConnectionError("database down")
            return session_factory()

        gate = EntitlementGate(flaky_factory, enabled=True)
        decision = await gate.check_entitlement("t1", now=datetime(2026, 1, 9, tzinfo=UTC))
        await gate.drain()

        assert decision.reason == "expired"
        assert "auto-expire failed" in caplog.text


class TestEntitlementMessage:
    """User-facing denial messages."""

    @pytest.mark.parametrize("reason", [None, "entitlement_disabled"])
    def test_allow_reasons_have_no_message(self, reason) -> None:
        assert entitlement_message(reason) is None

    @pytest.mark.parametrize("reason", ["none", "past_due", "grace_period", "canceled", "expired", "unavailable"])
    def test_denial_reasons_have_messages(self, reason: str) -> None:
        assert entitlement_message(reason)

    def test_unknown_reason_uses_default(self) -> None:
        assert entitlement_message("mystery") == "Payments are not available on your current plan."


class TestGateSingleton:
    """Module-level init/get pair."""

    def test_init_then_get(self) -> None:
        gate = init_entitlement_gate(MagicMock(), enabled=True)
        assert get_entitlement_gate() is gate
        assert gate.enabled is True
