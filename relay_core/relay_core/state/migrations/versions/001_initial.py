"""Initial schema: domain event log, billing state and platform alerts.

Creates ``domain_events``, ``tenant_subscriptions``, ``tenant_entitlements``,
``tenant_billing_events`` and ``platform_alerts``.  Row-level security is
enabled on the tenant-owned billing tables when running on PostgreSQL.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")

_RLS_TABLES: list[str] = [
    "tenant_subscriptions",
    "tenant_entitlements",
    "tenant_billing_events",
]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "domain_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("result", _JSON, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processed', 'failed')",
            name="ck_domain_events_status",
        ),
    )
    op.create_index("ix_domain_events_status_id", "domain_events", ["status", "id"])
    op.create_index("ix_domain_events_tenant", "domain_events", ["tenant_id"])

    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("external_subscription_id", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('none', 'active', 'past_due', 'grace_period', 'canceled', 'expired')",
            name="ck_tenant_subscriptions_status",
        ),
    )
    op.create_index(
        "ix_tenant_subscriptions_tenant_provider",
        "tenant_subscriptions",
        ["tenant_id", "provider"],
    )

    op.create_table(
        "tenant_entitlements",
        sa.Column("tenant_id", sa.String(128), primary_key=True),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("features_enabled", _JSON, nullable=False),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "tenant_billing_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("external_event_id", sa.String(256), nullable=True),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("external_event_id", name="uq_tenant_billing_events_external_event_id"),
    )
    op.create_index("ix_tenant_billing_events_tenant", "tenant_billing_events", ["tenant_id"])

    op.create_table(
        "platform_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=True),
        sa.Column("scope", sa.String(16), nullable=False, server_default="tenant"),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("source_type", sa.String(64), nullable=True),
        sa.Column("source_id", sa.String(256), nullable=True),
        sa.Column("metadata", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("scope IN ('tenant', 'admin')", name="ck_platform_alerts_scope"),
        sa.CheckConstraint(
            "severity IN ('info', 'warning', 'critical')",
            name="ck_platform_alerts_severity",
        ),
    )
    op.create_index(
        "ix_platform_alerts_tenant_created",
        "platform_alerts",
        ["tenant_id", "created_at"],
    )

    if _is_postgresql():
        for table in _RLS_TABLES:
            op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            op.execute(
                f"CREATE POLICY tenant_isolation_{table} ON {table} "
                "USING (tenant_id = current_setting('app.tenant_id', true))"
            )


def downgrade() -> None:
    if _is_postgresql():
        for table in _RLS_TABLES:
            op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")

    op.drop_index("ix_platform_alerts_tenant_created", table_name="platform_alerts")
    op.drop_table("platform_alerts")
    op.drop_index("ix_tenant_billing_events_tenant", table_name="tenant_billing_events")
    op.drop_table("tenant_billing_events")
    op.drop_table("tenant_entitlements")
    op.drop_index("ix_tenant_subscriptions_tenant_provider", table_name="tenant_subscriptions")
    op.drop_table("tenant_subscriptions")
    op.drop_index("ix_domain_events_tenant", table_name="domain_events")
    op.drop_index("ix_domain_events_status_id", table_name="domain_events")
    op.drop_table("domain_events")
