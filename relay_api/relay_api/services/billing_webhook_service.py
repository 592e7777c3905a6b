"""Billing webhook processing: subscription lifecycle to tenant entitlements.

Expected envelope (provider-agnostic, camelCase keys)::

    {
        "tenantId": "t1",
        "provider": "mercadopago",
        "eventType": "subscription.grace_start",
        "externalSubscriptionId": "sub_123",     # optional
        "externalEventId": "evt_456",            # optional, dedup key
        "status": "grace_period",
        "currentPeriodEnd": "2026-01-01T00:00:00Z",  # optional
        "canceledAt": null,                      # optional
        "metadata": {}                           # optional
    }

Processing order: validate, dedup by ``externalEventId``, update or insert
the open subscription, upsert the entitlement, append the audit row, and
raise an alert for actionable statuses.  Invalid envelopes are logged and
dropped.  Store errors propagate to the webhook router, which still
acknowledges the delivery.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from relay_core.state.database import set_tenant_context
from relay_core.state.repository import (
    BillingEventRepository,
    EntitlementRepository,
    SubscriptionRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from relay_api.config import APISettings
from relay_api.services.alert_service import AlertService, AlertSeverity

logger = logging.getLogger(__name__)

SubscriptionStatus = Literal["none", "active", "past_due", "grace_period", "canceled", "expired"]

# Statuses that keep the gated feature switched on.
ENTITLED_STATUSES: frozenset[str] = frozenset({"active", "grace_period"})


class _AlertTemplate(BaseModel):
    severity: AlertSeverity
    title: str
    body: str


ALERT_TEMPLATES: dict[str, _AlertTemplate] = {
    "past_due": _AlertTemplate(
        severity="warning",
        title="Subscription payment pending",
        body="We could not charge your plan. Update your payment method to avoid interruptions.",
    ),
    "grace_period": _AlertTemplate(
        severity="warning",
        title="Grace period active",
        body="Your subscription entered its grace period. Settle the payment to keep full access.",
    ),
    "canceled": _AlertTemplate(
        severity="critical",
        title="Subscription canceled",
        body="Your plan was canceled. Contact support if this was a mistake, or reactivate the subscription.",
    ),
    "expired": _AlertTemplate(
        severity="critical",
        title="Subscription expired",
        body="Your plan has expired. Some features may be disabled until you renew.",
    ),
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BillingEnvelope(BaseModel):
    """Validated billing webhook envelope."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    status: SubscriptionStatus
    external_subscription_id: str | None = None
    external_event_id: str | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("external_subscription_id", "external_event_id")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("current_period_end", "canceled_at")
    @classmethod
    def _normalise_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


def compute_grace_period_end(
    envelope: BillingEnvelope,
    *,
    grace_days: int,
    now: datetime | None = None,
) -> datetime | None:
    """Return the end of the grace window for a ``grace_period`` event.

    The window starts at ``current_period_end`` when given, else at *now*.
    Any other status has no grace window.
    """
    if envelope.status != "grace_period":
        return None
    base = envelope.current_period_end or now or datetime.now(UTC)
    return base + timedelta(days=grace_days)


class BillingWebhookService:
    """Apply billing lifecycle events to subscription and entitlement state.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings providing the grace window and feature tag.
    """

    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._session = session
        self._settings = settings

    async def process_billing_event(self, raw_payload: Any) -> None:
        """Validate and apply one billing event.

        Returns without side effects when the payload is invalid or the
        ``externalEventId`` was already processed.
        """
        try:
            envelope = BillingEnvelope.model_validate(raw_payload)
        except ValidationError as exc:
            logger.warning("Invalid billing payload schema: %s", exc.errors(include_url=False))
            return

        await set_tenant_context(self._session, envelope.tenant_id)

        billing_events = BillingEventRepository(self._session)
        if envelope.external_event_id and await billing_events.exists(envelope.external_event_id):
            logger.info(
                "Duplicate billing event skipped: external_event_id=%s",
                envelope.external_event_id,
                extra={"tenant_id": envelope.tenant_id},
            )
            return

        await self._apply_subscription(envelope)

        grace_period_end = compute_grace_period_end(envelope, grace_days=self._settings.grace_period_days)
        features = [self._settings.entitlement_feature] if envelope.status in ENTITLED_STATUSES else []
        await EntitlementRepository(self._session, tenant_id=envelope.tenant_id).upsert(
            envelope.status,
            features,
            grace_period_end,
        )

        await billing_events.append(
            tenant_id=envelope.tenant_id,
            event_type=envelope.event_type,
            external_event_id=envelope.external_event_id,
            payload=raw_payload if isinstance(raw_payload, dict) else envelope.model_dump(mode="json", by_alias=True),
        )

        await self._raise_alert(envelope)

        logger.info(
            "Billing event applied tenant=%s provider=%s event=%s status=%s",
            envelope.tenant_id,
            envelope.provider,
            envelope.event_type,
            envelope.status,
            extra={"tenant_id": envelope.tenant_id, "event_type": envelope.event_type},
        )

    async def _apply_subscription(self, envelope: BillingEnvelope) -> None:
        """Update the open subscription for the provider, or insert one."""
        repo = SubscriptionRepository(self._session, tenant_id=envelope.tenant_id)
        fields: dict[str, Any] = {
            "external_subscription_id": envelope.external_subscription_id,
            "current_period_end": envelope.current_period_end,
            "canceled_at": envelope.canceled_at,
            "metadata": envelope.metadata,
        }
        existing = await repo.get_open(envelope.provider)
        if existing is not None:
            await repo.update(existing, envelope.status, **fields)
        else:
            await repo.create(envelope.provider, envelope.status, **fields)

    async def _raise_alert(self, envelope: BillingEnvelope) -> None:
        template = ALERT_TEMPLATES.get(envelope.status)
        if template is None:
            return
        await AlertService(self._session).create_alert(
            tenant_id=envelope.tenant_id,
            scope="tenant",
            alert_type="subscription",
            severity=template.severity,
            title=template.title,
            body=template.body,
            source_type="billing_subscription",
            source_id=envelope.external_subscription_id,
            metadata={
                "event_type": envelope.event_type,
                "provider": envelope.provider,
                "external_event_id": envelope.external_event_id,
            },
        )
