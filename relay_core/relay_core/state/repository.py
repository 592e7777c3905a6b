"""Repository classes providing access to the posrelay state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.state.tables import (
    DomainEventTable,
    PaymentAttemptTable,
    PlatformAlertTable,
    ProviderCredentialTable,
    TenantBillingEventTable,
    TenantEntitlementTable,
    TenantSubscriptionTable,
)

logger = logging.getLogger(__name__)

# Subscription statuses after which a new event opens a fresh row.
TERMINAL_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"canceled", "expired"})

# Payment attempt statuses that no notification moves out of.
TERMINAL_PAYMENT_STATUSES: frozenset[str] = frozenset({"approved", "rejected", "canceled", "error"})


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# DomainEventRepository
# ---------------------------------------------------------------------------


class DomainEventRepository:
    """Append-only access to the ``domain_events`` log.

    Status transitions are guarded by a ``status = 'pending'`` predicate so
    a row can reach a terminal status at most once.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        tenant_id: str | None = None,
    ) -> int:
        """Insert a ``pending`` event row and return its store-assigned id."""
        row = DomainEventTable(
            event_type=event_type,
            payload=payload,
            status="pending",
            tenant_id=tenant_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row.id

    async def get(self, event_id: int) -> DomainEventTable | None:
        """Fetch a single event row by id."""
        stmt = select(DomainEventTable).where(DomainEventTable.id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_processed(self, event_id: int, result: Any = None) -> bool:
        """Transition a pending row to ``processed``.

        Returns ``True`` when the row was updated, ``False`` when it had
        already left ``pending``.
        """
        return await self._finish(event_id, status="processed", result=result)

    async def mark_failed(self, event_id: int, error_message: str) -> bool:
        """Transition a pending row to ``failed`` with *error_message*."""
        return await self._finish(event_id, status="failed", error_message=error_message)

    async def _finish(
        self,
        event_id: int,
        *,
        status: str,
        result: Any = None,
        error_message: str | None = None,
    ) -> bool:
        stmt = (
            update(DomainEventTable)
            .where(
                DomainEventTable.id == event_id,
                DomainEventTable.status == "pending",
            )
            .values(status=status, result=result, error_message=error_message)
        )
        res = await self._session.execute(stmt)
        await self._session.flush()
        updated = res.rowcount > 0  # type: ignore[attr-defined]
        if not updated:
            logger.warning("Domain event %d was not pending; %s transition ignored", event_id, status)
        return updated

    async def max_id(self) -> int:
        """Return the highest event id in the log, or ``0`` when empty."""
        stmt = select(func.coalesce(func.max(DomainEventTable.id), 0))
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def list_processed_after(
        self,
        cursor: int,
        *,
        limit: int = 50,
        tenant_id: str | None = None,
    ) -> list[DomainEventTable]:
        """Return processed rows with ``id > cursor`` in ascending id order.

        Parameters
        ----------
        cursor:
            Exclusive lower bound on the event id.
        limit:
            Maximum number of rows to return.
        tenant_id:
            When given, only rows for this tenant are returned.
        """
        stmt = select(DomainEventTable).where(
            DomainEventTable.id > cursor,
            DomainEventTable.status == "processed",
        )
        if tenant_id is not None:
            stmt = stmt.where(DomainEventTable.tenant_id == tenant_id)
        stmt = stmt.order_by(DomainEventTable.id.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Tenant subscription rows, one open row per (tenant, provider)."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get_open(self, provider: str) -> TenantSubscriptionTable | None:
        """Return the newest non-terminal subscription for *provider*, if any."""
        stmt = (
            select(TenantSubscriptionTable)
            .where(
                TenantSubscriptionTable.tenant_id == self._tenant_id,
                TenantSubscriptionTable.provider == provider,
                TenantSubscriptionTable.status.not_in(sorted(TERMINAL_SUBSCRIPTION_STATUSES)),
            )
            .order_by(TenantSubscriptionTable.created_at.desc(), TenantSubscriptionTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        provider: str,
        status: str,
        *,
        external_subscription_id: str | None = None,
        current_period_end: datetime | None = None,
        canceled_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TenantSubscriptionTable:
        """Insert a new subscription row."""
        row = TenantSubscriptionTable(
            tenant_id=self._tenant_id,
            provider=provider,
            status=status,
            external_subscription_id=external_subscription_id,
            current_period_end=current_period_end,
            canceled_at=canceled_at,
            metadata_json=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def update(
        self,
        row: TenantSubscriptionTable,
        status: str,
        *,
        external_subscription_id: str | None = None,
        current_period_end: datetime | None = None,
        canceled_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TenantSubscriptionTable:
        """Overwrite the lifecycle fields of an existing subscription row."""
        row.status = status
        row.external_subscription_id = external_subscription_id
        row.current_period_end = current_period_end
        row.canceled_at = canceled_at
        row.metadata_json = metadata
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """Per-tenant entitlement row, keyed by ``tenant_id``."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> TenantEntitlementTable | None:
        """Return the entitlement row for this tenant."""
        stmt = select(TenantEntitlementTable).where(TenantEntitlementTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        subscription_status: str,
        features_enabled: list[str],
        grace_period_end: datetime | None,
    ) -> None:
        """Atomically insert or overwrite the tenant's entitlement row."""
        values = {
            "tenant_id": self._tenant_id,
            "subscription_status": subscription_status,
            "features_enabled": features_enabled,
            "grace_period_end": grace_period_end,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            TenantEntitlementTable,
            values,
            index_elements=["tenant_id"],
            update_columns=["subscription_status", "features_enabled", "grace_period_end", "updated_at"],
        )
        await self._session.flush()

    async def expire_if_in_grace(self) -> bool:
        """Move the row to ``expired`` only if it is still in ``grace_period``.

        Returns ``True`` when a row was changed.  A concurrent billing event
        that already advanced the row makes this a no-op.
        """
        stmt = (
            update(TenantEntitlementTable)
            .where(
                TenantEntitlementTable.tenant_id == self._tenant_id,
                TenantEntitlementTable.subscription_status == "grace_period",
            )
            .values(
                subscription_status="expired",
                features_enabled=[],
                updated_at=datetime.now(UTC),
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# BillingEventRepository
# ---------------------------------------------------------------------------


class BillingEventRepository:
    """Append-only audit of accepted billing webhook envelopes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, external_event_id: str) -> bool:
        """Return ``True`` if an event with this provider id was already recorded."""
        stmt = select(TenantBillingEventTable.id).where(
            TenantBillingEventTable.external_event_id == external_event_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def append(
        self,
        *,
        tenant_id: str,
        event_type: str,
        external_event_id: str | None,
        payload: dict[str, Any],
    ) -> TenantBillingEventTable:
        """Record one accepted billing event."""
        row = TenantBillingEventTable(
            tenant_id=tenant_id,
            event_type=event_type,
            external_event_id=external_event_id,
            payload=payload,
        )
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# AlertRepository
# ---------------------------------------------------------------------------


class AlertRepository:
    """Platform alerts with a tenant view and a global (admin) view.

    A repository built with ``tenant_id=None`` sees every row.  A tenant
    view sees tenant-scope rows that are its own or global broadcasts
    (``tenant_id IS NULL``); admin-scope rows are never in a tenant view.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _visible(self) -> Any:
        if self._tenant_id is None:
            return None
        # Admin-scope rows stay operator-only even when tied to a tenant.
        return and_(
            PlatformAlertTable.scope == "tenant",
            or_(PlatformAlertTable.tenant_id == self._tenant_id, PlatformAlertTable.tenant_id.is_(None)),
        )

    async def create(
        self,
        *,
        tenant_id: str | None,
        scope: str,
        alert_type: str,
        severity: str,
        title: str,
        body: str = "",
        source_type: str | None = None,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PlatformAlertTable:
        """Insert a new alert row and return it."""
        row = PlatformAlertTable(
            tenant_id=tenant_id,
            scope=scope,
            type=alert_type,
            severity=severity,
            title=title,
            body=body,
            source_type=source_type,
            source_id=source_id,
            metadata_json=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_visible(
        self,
        *,
        unread_only: bool = False,
        alert_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PlatformAlertTable]:
        """Return visible alerts, newest first."""
        stmt = select(PlatformAlertTable)
        visible = self._visible()
        if visible is not None:
            stmt = stmt.where(visible)
        if unread_only:
            stmt = stmt.where(PlatformAlertTable.read_at.is_(None))
        if alert_type is not None:
            stmt = stmt.where(PlatformAlertTable.type == alert_type)
        stmt = (
            stmt.order_by(PlatformAlertTable.created_at.desc(), PlatformAlertTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def unread_count(self) -> int:
        """Count visible unread alerts (no pagination)."""
        stmt = select(func.count()).select_from(PlatformAlertTable).where(PlatformAlertTable.read_at.is_(None))
        visible = self._visible()
        if visible is not None:
            stmt = stmt.where(visible)
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def mark_read(self, alert_id: int) -> bool:
        """Set ``read_at`` on one unread alert owned by this tenant."""
        stmt = update(PlatformAlertTable).where(
            PlatformAlertTable.id == alert_id,
            PlatformAlertTable.read_at.is_(None),
        )
        if self._tenant_id is not None:
            stmt = stmt.where(PlatformAlertTable.tenant_id == self._tenant_id, PlatformAlertTable.scope == "tenant")
        result = await self._session.execute(stmt.values(read_at=datetime.now(UTC)))
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_all_read(self, *, alert_type: str | None = None) -> int:
        """Mark every visible unread alert read; returns the number of rows changed."""
        stmt = update(PlatformAlertTable).where(PlatformAlertTable.read_at.is_(None))
        visible = self._visible()
        if visible is not None:
            stmt = stmt.where(visible)
        if alert_type is not None:
            stmt = stmt.where(PlatformAlertTable.type == alert_type)
        result = await self._session.execute(stmt.values(read_at=datetime.now(UTC)))
        await self._session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CredentialRepository
# ---------------------------------------------------------------------------


class CredentialRepository:
    """Connected provider accounts.

    Not tenant-scoped: payment notifications identify the provider account,
    and the tenant is resolved from it.  Token columns hold whatever the
    caller passes; encryption happens above this layer.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _newest_active(self, *criteria: Any) -> ProviderCredentialTable | None:
        stmt = (
            select(ProviderCredentialTable)
            .where(ProviderCredentialTable.status == "active", *criteria)
            .order_by(ProviderCredentialTable.created_at.desc(), ProviderCredentialTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_by_user(self, provider_user_id: str) -> ProviderCredentialTable | None:
        """Return the newest active credential for a provider account id."""
        return await self._newest_active(ProviderCredentialTable.provider_user_id == provider_user_id)

    async def find_active_by_email(self, contact_email: str) -> ProviderCredentialTable | None:
        return await self._newest_active(ProviderCredentialTable.contact_email == contact_email)

    async def get_active(self, tenant_id: str) -> ProviderCredentialTable | None:
        """Return the tenant's active credential, if it has connected an account."""
        return await self._newest_active(ProviderCredentialTable.tenant_id == tenant_id)

    async def replace(
        self,
        tenant_id: str,
        *,
        provider_user_id: str,
        app_id: str,
        access_token: str,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        contact_email: str | None = None,
    ) -> ProviderCredentialTable:
        """Deactivate the tenant's active credentials and insert a new active row."""
        await self.deactivate(tenant_id)
        row = ProviderCredentialTable(
            tenant_id=tenant_id,
            provider_user_id=provider_user_id,
            app_id=app_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            contact_email=contact_email,
            status="active",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def deactivate(self, tenant_id: str) -> int:
        """Mark every active credential of *tenant_id* inactive; returns the row count."""
        stmt = (
            update(ProviderCredentialTable)
            .where(
                ProviderCredentialTable.tenant_id == tenant_id,
                ProviderCredentialTable.status == "active",
            )
            .values(status="inactive", updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PaymentAttemptRepository
# ---------------------------------------------------------------------------


class PaymentAttemptRepository:
    """Non-terminal payment attempts of one tenant."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def _newest_open(self, *criteria: Any) -> PaymentAttemptTable | None:
        stmt = (
            select(PaymentAttemptTable)
            .where(
                PaymentAttemptTable.tenant_id == self._tenant_id,
                PaymentAttemptTable.status.not_in(sorted(TERMINAL_PAYMENT_STATUSES)),
                *criteria,
            )
            .order_by(PaymentAttemptTable.created_at.desc(), PaymentAttemptTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open_by_order(self, order_id: str) -> PaymentAttemptTable | None:
        """Return the newest non-terminal attempt for *order_id*."""
        return await self._newest_open(PaymentAttemptTable.order_id == order_id)

    async def find_open_by_transaction(self, provider_transaction_id: str) -> PaymentAttemptTable | None:
        """Return the newest non-terminal attempt carrying *provider_transaction_id*."""
        return await self._newest_open(PaymentAttemptTable.provider_transaction_id == provider_transaction_id)

    async def apply_notification(
        self,
        row: PaymentAttemptTable,
        status: str,
        *,
        notification_id: str,
        response_data: dict[str, Any] | None = None,
        provider_transaction_id: str | None = None,
    ) -> PaymentAttemptTable:
        """Move *row* to *status* and record the notification that did it."""
        now = datetime.now(UTC)
        row.status = status
        if provider_transaction_id is not None:
            row.provider_transaction_id = provider_transaction_id
        if response_data is not None:
            row.response_data = response_data
        row.last_notification_id = notification_id
        row.last_processed_at = now
        row.updated_at = now
        await self._session.flush()
        return row
