"""Platform alerts for the calling tenant."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query

from relay_api.dependencies import SessionDep, TenantDep
from relay_api.schemas import AlertListResponse, AlertResponse, MarkReadResponse
from relay_api.services.alert_service import AlertService, AlertType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    session: SessionDep,
    tenant_id: TenantDep,
    unread_only: bool = False,
    alert_type: Annotated[AlertType | None, Query(alias="type")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> AlertListResponse:
    """List the tenant's alerts (including broadcasts), newest first."""
    page = await AlertService(session, tenant_id=tenant_id).list_alerts(
        unread_only=unread_only,
        alert_type=alert_type,
        limit=limit,
        offset=offset,
    )
    return AlertListResponse(
        alerts=[AlertResponse.model_validate(row) for row in page.alerts],
        unread_count=page.unread_count,
    )


@router.post("/read-all", response_model=MarkReadResponse)
async def mark_all_alerts_read(
    session: SessionDep,
    tenant_id: TenantDep,
    alert_type: Annotated[AlertType | None, Query(alias="type")] = None,
) -> MarkReadResponse:
    """Mark every visible unread alert read."""
    updated = await AlertService(session, tenant_id=tenant_id).mark_all_read(alert_type=alert_type)
    return MarkReadResponse(updated=updated)


@router.post("/{alert_id}/read", response_model=MarkReadResponse)
async def mark_alert_read(alert_id: int, session: SessionDep, tenant_id: TenantDep) -> MarkReadResponse:
    """Mark one alert read."""
    if not await AlertService(session, tenant_id=tenant_id).mark_read(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found or already read")
    return MarkReadResponse(updated=1)
