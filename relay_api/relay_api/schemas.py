"""Shared Pydantic response models for API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook callers, always with HTTP 200."""

    received: bool = True
    error: str | None = None


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementResponse(BaseModel):
    """Gate decision for the calling tenant."""

    tenant_id: str
    allowed: bool
    reason: str | None = None
    message: str | None = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertResponse(BaseModel):
    """A single platform alert."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str | None = None
    scope: str
    type: str
    severity: str
    title: str
    body: str = ""
    source_type: str | None = None
    source_id: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime | None = None
    read_at: datetime | None = None


class AlertListResponse(BaseModel):
    """One page of alerts plus the unread badge count."""

    alerts: list[AlertResponse] = Field(default_factory=list)
    unread_count: int = 0


class MarkReadResponse(BaseModel):
    updated: int
