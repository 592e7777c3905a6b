"""API router modules for the posrelay service."""

from __future__ import annotations

from relay_api.routers import alerts, entitlements, events, health, oauth, webhooks

__all__ = [
    "alerts",
    "entitlements",
    "events",
    "health",
    "oauth",
    "webhooks",
]
