"""Unit tests for the domain event type set and payload validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from relay_core.events.contracts import (
    PAYLOAD_MODELS,
    DomainEventType,
    OrderClosed,
    OrderCreated,
    OrderItemUpdated,
    parse_payload,
)


class TestEventTypeRegistry:
    """Every event type has exactly one payload model."""

    def test_every_type_has_a_model(self) -> None:
        assert set(PAYLOAD_MODELS) == set(DomainEventType)

    def test_string_values_round_trip(self) -> None:
        assert DomainEventType("order.created") is DomainEventType.ORDER_CREATED

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            DomainEventType("order.teleported")


class TestParsePayload:
    """Validation of raw payload dicts."""

    def test_valid_payload(self) -> None:
        model = parse_payload(DomainEventType.ORDER_CREATED, {"tenant_id": "t1", "time_zone": "America/Santiago"})
        assert isinstance(model, OrderCreated)
        assert model.time_zone == "America/Santiago"

    def test_defaults_applied(self) -> None:
        model = parse_payload(DomainEventType.ORDER_CREATED, {"tenant_id": "t1"})
        assert model.time_zone == "UTC"

    def test_missing_tenant_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_payload(DomainEventType.ORDER_CLOSED, {"order_id": "o1"})

    def test_empty_tenant_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_payload(DomainEventType.ORDER_CLOSED, {"tenant_id": "", "order_id": "o1"})

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_payload(DomainEventType.ORDER_CLOSED, {"tenant_id": "t1", "order_id": "o1", "bogus": 1})

    def test_literal_fields_enforced(self) -> None:
        with pytest.raises(ValidationError):
            parse_payload(
                DomainEventType.ORDER_ITEM_UPDATED,
                {"tenant_id": "t1", "order_id": "o1", "product_id": "p1", "type": "UPSERT"},
            )

    def test_validation_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_payload(DomainEventType.ORDER_SPLIT, {"tenant_id": "t1"})

    def test_built_model_passes_through(self) -> None:
        model = OrderClosed(tenant_id="t1", order_id="o1")
        assert parse_payload(DomainEventType.ORDER_CLOSED, model) is model

    def test_built_model_of_wrong_type_rejected(self) -> None:
        model = OrderItemUpdated(tenant_id="t1", order_id="o1", product_id="p1", type="INSERT")
        with pytest.raises(TypeError, match="OrderClosed"):
            parse_payload(DomainEventType.ORDER_CLOSED, model)
