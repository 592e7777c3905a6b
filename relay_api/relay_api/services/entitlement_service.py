"""Tenant entitlement gate for the payment-provider features.

The gate is opt-in: with ``entitlement_enabled`` off every tenant is
allowed with reason ``entitlement_disabled``.  When on, the decision is
read from ``tenant_entitlements``.  A ``grace_period`` row whose window has
closed is reported ``expired`` and corrected in the background with a
conditional update, so a billing event that already advanced the row wins.

The gate never raises.  Store errors on the read path deny with reason
``unavailable``; errors in the background correction are only logged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from relay_core.state.database import set_tenant_context
from relay_core.state.repository import EntitlementRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Statuses that allow the gated feature.
ALLOWED_STATUSES: frozenset[str] = frozenset({"active", "grace_period"})


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of a gate check.  ``reason`` is ``None`` for a plain allow."""

    allowed: bool
    reason: str | None = None


_MESSAGES: dict[str, str] = {
    "none": "You need an active subscription to connect payments.",
    "past_due": "Your subscription has a pending payment. Settle it to keep using payments.",
    "grace_period": "Your grace period has ended. Update your payment method to enable payments.",
    "canceled": "Your subscription was canceled. Renew to enable payments again.",
    "expired": "Your subscription was canceled. Renew to enable payments again.",
    "unavailable": "Payments are temporarily unavailable. Please try again shortly.",
}
_DEFAULT_MESSAGE = "Payments are not available on your current plan."


def entitlement_message(reason: str | None) -> str | None:
    """Return the user-facing message for a denial *reason*.

    ``None`` and ``entitlement_disabled`` are allow reasons and have no
    message.
    """
    if reason is None or reason == "entitlement_disabled":
        return None
    return _MESSAGES.get(reason, _DEFAULT_MESSAGE)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class EntitlementGate:
    """Read-time entitlement check with lazy grace-period expiry.

    Parameters
    ----------
    session_factory:
        Factory for the sessions used by reads and the write-through.
    enabled:
        When ``False`` every check is allowed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        enabled: bool,
    ) -> None:
        self._session_factory = session_factory
        self._enabled = enabled
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def check_entitlement(
        self,
        tenant_id: str,
        *,
        now: datetime | None = None,
    ) -> EntitlementDecision:
        """Return whether *tenant_id* may use the gated feature."""
        if not self._enabled:
            return EntitlementDecision(allowed=True, reason="entitlement_disabled")

        try:
            async with self._session_factory() as session:
                await set_tenant_context(session, tenant_id)
                row = await EntitlementRepository(session, tenant_id=tenant_id).get()
        except Exception:
            logger.exception("Entitlement read failed for tenant=%s", tenant_id)
            return EntitlementDecision(allowed=False, reason="unavailable")

        if row is None:
            return EntitlementDecision(allowed=False, reason="none")

        status = row.subscription_status
        if status not in ALLOWED_STATUSES:
            return EntitlementDecision(allowed=False, reason=status)

        if status == "grace_period" and row.grace_period_end is not None:
            current = now or datetime.now(UTC)
            if _as_utc(row.grace_period_end) < current:
                self._schedule_expiry(tenant_id)
                return EntitlementDecision(allowed=False, reason="expired")

        return EntitlementDecision(allowed=True)

    def _schedule_expiry(self, tenant_id: str) -> None:
        task = asyncio.create_task(self._expire_grace_period(tenant_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _expire_grace_period(self, tenant_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await set_tenant_context(session, tenant_id)
                changed = await EntitlementRepository(session, tenant_id=tenant_id).expire_if_in_grace()
                await session.commit()
        except Exception:
            logger.warning("Grace-period auto-expire failed for tenant=%s", tenant_id, exc_info=True)
            return
        if changed:
            logger.info("Entitlement expired after grace period tenant=%s", tenant_id)

    async def drain(self) -> None:
        """Wait for outstanding write-through tasks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_gate: EntitlementGate | None = None


def init_entitlement_gate(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    enabled: bool,
) -> EntitlementGate:
    """Create the global gate.  Called from the application lifespan."""
    global _gate  # noqa: PLW0603
    _gate = EntitlementGate(session_factory, enabled=enabled)
    logger.info("Entitlement gate initialised (enabled=%s)", enabled)
    return _gate


def get_entitlement_gate() -> EntitlementGate:
    """Return the global gate.

    Raises
    ------
    RuntimeError
        If :func:`init_entitlement_gate` has not been called.
    """
    if _gate is None:
        raise RuntimeError("Entitlement gate has not been initialised. Call init_entitlement_gate() at startup.")
    return _gate
