"""Provider credentials and payment attempts.

Creates ``provider_credentials`` (connected provider accounts per tenant)
and ``payment_attempts`` (POS payment collection state updated by payment
notifications).  Row-level security is enabled on ``payment_attempts``
only: credentials are looked up across tenants to route notifications.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "provider_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("provider_user_id", sa.String(64), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("app_id", sa.String(64), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'inactive', 'error')",
            name="ck_provider_credentials_status",
        ),
    )
    op.create_index(
        "ix_provider_credentials_user_status",
        "provider_credentials",
        ["provider_user_id", "status"],
    )
    op.create_index(
        "ix_provider_credentials_tenant_status",
        "provider_credentials",
        ["tenant_id", "status"],
    )

    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("order_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_transaction_id", sa.String(128), nullable=True),
        sa.Column("response_data", _JSON, nullable=True),
        sa.Column("last_notification_id", sa.String(128), nullable=True),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'approved', 'rejected', 'canceled', 'error')",
            name="ck_payment_attempts_status",
        ),
    )
    op.create_index("ix_payment_attempts_tenant_order", "payment_attempts", ["tenant_id", "order_id"])
    op.create_index(
        "ix_payment_attempts_tenant_transaction",
        "payment_attempts",
        ["tenant_id", "provider_transaction_id"],
    )

    if _is_postgresql():
        op.execute("ALTER TABLE payment_attempts ENABLE ROW LEVEL SECURITY")
        op.execute(
            "CREATE POLICY tenant_isolation_payment_attempts ON payment_attempts "
            "USING (tenant_id = current_setting('app.tenant_id', true))"
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("DROP POLICY IF EXISTS tenant_isolation_payment_attempts ON payment_attempts")

    op.drop_index("ix_payment_attempts_tenant_transaction", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_tenant_order", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_provider_credentials_tenant_status", table_name="provider_credentials")
    op.drop_index("ix_provider_credentials_user_status", table_name="provider_credentials")
    op.drop_table("provider_credentials")
