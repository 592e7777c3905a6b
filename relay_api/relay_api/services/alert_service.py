"""Platform alerts: creation by backend services, listing and read-state for tenants.

Alert scopes:

* ``tenant`` -- visible to the owning tenant.  Rows with a NULL
  ``tenant_id`` are broadcasts visible to every tenant.
* ``admin`` -- visible only to platform operators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from relay_core.state.repository import AlertRepository
from relay_core.state.tables import PlatformAlertTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

AlertScope = Literal["tenant", "admin"]
AlertSeverity = Literal["info", "warning", "critical"]
AlertType = Literal["subscription", "payment", "system", "changelog"]


@dataclass(frozen=True)
class AlertsPage:
    """One page of alerts plus the unread badge count."""

    alerts: list[PlatformAlertTable]
    unread_count: int


class AlertService:
    """Alert operations bound to a viewer.

    Parameters
    ----------
    session:
        Active database session.
    tenant_id:
        The viewing tenant, or ``None`` for the operator view of all rows.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._repo = AlertRepository(session, tenant_id=tenant_id)

    async def create_alert(
        self,
        *,
        tenant_id: str | None,
        scope: AlertScope,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        body: str = "",
        source_type: str | None = None,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Insert an alert and return its id."""
        row = await self._repo.create(
            tenant_id=tenant_id,
            scope=scope,
            alert_type=alert_type,
            severity=severity,
            title=title,
            body=body,
            source_type=source_type,
            source_id=source_id,
            metadata=metadata,
        )
        logger.info(
            "Alert created id=%s tenant=%s type=%s severity=%s",
            row.id,
            tenant_id,
            alert_type,
            severity,
        )
        return row.id

    async def list_alerts(
        self,
        *,
        unread_only: bool = False,
        alert_type: AlertType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AlertsPage:
        """Return a page of visible alerts, newest first, with the unread count."""
        alerts = await self._repo.list_visible(
            unread_only=unread_only,
            alert_type=alert_type,
            limit=limit,
            offset=offset,
        )
        unread = await self._repo.unread_count()
        return AlertsPage(alerts=alerts, unread_count=unread)

    async def mark_read(self, alert_id: int) -> bool:
        """Mark one alert read.  Returns ``False`` if it was not found or already read."""
        return await self._repo.mark_read(alert_id)

    async def mark_all_read(self, *, alert_type: AlertType | None = None) -> int:
        """Mark every visible unread alert read; returns the count."""
        return await self._repo.mark_all_read(alert_type=alert_type)
