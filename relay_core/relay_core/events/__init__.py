"""Domain event contracts and the closed handler registry."""

from relay_core.events.contracts import PAYLOAD_MODELS, DomainEventType, EventPayload, parse_payload
from relay_core.events.handlers import DomainActions, EventHandler, resolve_handler

__all__ = [
    "PAYLOAD_MODELS",
    "DomainActions",
    "DomainEventType",
    "EventHandler",
    "EventPayload",
    "parse_payload",
    "resolve_handler",
]
