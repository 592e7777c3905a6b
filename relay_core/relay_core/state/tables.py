"""SQLAlchemy 2.0 ORM table definitions for the posrelay state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all posrelay tables."""


# ---------------------------------------------------------------------------
# Domain event log
# ---------------------------------------------------------------------------


class DomainEventTable(Base):
    """Append-only log of dispatched domain events.

    Rows are inserted ``pending`` before the handler runs and updated once
    to ``processed`` or ``failed``.  The autoincrement ``id`` is the only
    ordering used by the invalidation stream for resumption.
    """

    __tablename__ = "domain_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    result: Mapped[Any | None] = mapped_column(_JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processed', 'failed')",
            name="ck_domain_events_status",
        ),
        Index("ix_domain_events_status_id", "status", "id"),
        Index("ix_domain_events_tenant", "tenant_id"),
    )


# ---------------------------------------------------------------------------
# Tenant subscriptions
# ---------------------------------------------------------------------------


class TenantSubscriptionTable(Base):
    """Provider subscription lifecycle per tenant.

    At most one row per (tenant_id, provider) is in a non-terminal status;
    terminal statuses (canceled, expired) close out the existing row.
    """

    __tablename__ = "tenant_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    external_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('none', 'active', 'past_due', 'grace_period', 'canceled', 'expired')",
            name="ck_tenant_subscriptions_status",
        ),
        Index("ix_tenant_subscriptions_tenant_provider", "tenant_id", "provider"),
    )


# ---------------------------------------------------------------------------
# Tenant entitlements
# ---------------------------------------------------------------------------


class TenantEntitlementTable(Base):
    """Current feature entitlement per tenant, keyed 1:1 by ``tenant_id``."""

    __tablename__ = "tenant_entitlements"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    features_enabled: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    grace_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Billing event audit
# ---------------------------------------------------------------------------


class TenantBillingEventTable(Base):
    """Raw billing webhook envelopes, one row per accepted delivery.

    ``external_event_id`` is the provider's own event id and the dedup key.
    NULL values never collide under the unique constraint.
    """

    __tablename__ = "tenant_billing_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    external_event_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_tenant_billing_events_external_event_id"),
        Index("ix_tenant_billing_events_tenant", "tenant_id"),
    )


# ---------------------------------------------------------------------------
# Platform alerts
# ---------------------------------------------------------------------------


class PlatformAlertTable(Base):
    """Operator- and tenant-facing alerts.

    ``tenant_id`` is NULL for global broadcasts.  Only ``read_at`` is ever
    mutated after insert.
    """

    __tablename__ = "platform_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default="tenant")
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("scope IN ('tenant', 'admin')", name="ck_platform_alerts_scope"),
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')",
            name="ck_platform_alerts_severity",
        ),
        Index("ix_platform_alerts_tenant_created", "tenant_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Provider credentials
# ---------------------------------------------------------------------------


class ProviderCredentialTable(Base):
    """OAuth credentials of a tenant's connected payment provider account.

    At most one row per tenant is ``active``; reconnecting deactivates the
    previous row.  Tokens are stored encrypted by
    :class:`~relay_api.security.CredentialVault` when a key is configured.
    """

    __tablename__ = "provider_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'error')",
            name="ck_provider_credentials_status",
        ),
        Index("ix_provider_credentials_user_status", "provider_user_id", "status"),
        Index("ix_provider_credentials_tenant_status", "tenant_id", "status"),
    )


# ---------------------------------------------------------------------------
# Payment attempts
# ---------------------------------------------------------------------------


class PaymentAttemptTable(Base):
    """One attempt to collect payment for a POS order through the provider.

    Rows are created by the order flow.  Payment notifications move a
    non-terminal attempt to its new status and record the notification id
    so a redelivery is skipped.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    response_data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    last_notification_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'approved', 'rejected', 'canceled', 'error')",
            name="ck_payment_attempts_status",
        ),
        Index("ix_payment_attempts_tenant_order", "tenant_id", "order_id"),
        Index("ix_payment_attempts_tenant_transaction", "tenant_id", "provider_transaction_id"),
    )
