"""State persistence layer: event log, billing state, payments and alerts."""

from relay_core.state.database import get_engine, set_tenant_context
from relay_core.state.repository import (
    AlertRepository,
    BillingEventRepository,
    CredentialRepository,
    DomainEventRepository,
    EntitlementRepository,
    PaymentAttemptRepository,
    SubscriptionRepository,
)

__all__ = [
    "AlertRepository",
    "BillingEventRepository",
    "CredentialRepository",
    "DomainEventRepository",
    "EntitlementRepository",
    "PaymentAttemptRepository",
    "SubscriptionRepository",
    "get_engine",
    "set_tenant_context",
]
