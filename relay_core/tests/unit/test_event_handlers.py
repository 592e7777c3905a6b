"""Unit tests for the domain event handler registry."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from relay_core.events.contracts import DomainEventType, parse_payload
from relay_core.events.handlers import resolve_handler


@pytest.fixture
def actions() -> AsyncMock:
    mock = AsyncMock()
    mock.add_inventory_item.return_value = {"id": "inv-1"}
    return mock


class TestResolveHandler:
    """Each event type resolves to a handler bound to the actions."""

    @pytest.mark.parametrize("event_type", list(DomainEventType))
    def test_every_type_resolves(self, event_type: DomainEventType, actions: AsyncMock) -> None:
        assert callable(resolve_handler(event_type, actions))

    @pytest.mark.asyncio
    async def test_order_created(self, actions: AsyncMock) -> None:
        actions.insert_order.return_value = {"id": "o1"}
        payload = parse_payload(DomainEventType.ORDER_CREATED, {"tenant_id": "t1", "time_zone": "UTC"})

        result = await resolve_handler(DomainEventType.ORDER_CREATED, actions)(payload)

        assert result == {"id": "o1"}
        actions.insert_order.assert_awaited_once_with("t1", "UTC")

    @pytest.mark.asyncio
    async def test_order_item_updated(self, actions: AsyncMock) -> None:
        payload = parse_payload(
            DomainEventType.ORDER_ITEM_UPDATED,
            {"tenant_id": "t1", "order_id": "o1", "product_id": "p1", "type": "DELETE"},
        )
        await resolve_handler(DomainEventType.ORDER_ITEM_UPDATED, actions)(payload)
        actions.update_order_item.assert_awaited_once_with("t1", "o1", "p1", "DELETE")

    @pytest.mark.asyncio
    async def test_product_upserted(self, actions: AsyncMock) -> None:
        payload = parse_payload(
            DomainEventType.PRODUCT_UPSERTED,
            {"tenant_id": "t1", "name": "Latte", "price": 3.5},
        )
        await resolve_handler(DomainEventType.PRODUCT_UPSERTED, actions)(payload)
        actions.upsert_product.assert_awaited_once_with("t1", product_id=None, name="Latte", price=3.5, tags="")

    @pytest.mark.asyncio
    async def test_inventory_item_added_with_category(self, actions: AsyncMock) -> None:
        actions.toggle_category_item.return_value = "added"
        payload = parse_payload(
            DomainEventType.INVENTORY_ITEM_ADDED,
            {"tenant_id": "t1", "name": "Milk", "quantity_type_key": "L", "category_id": "c1"},
        )

        result = await resolve_handler(DomainEventType.INVENTORY_ITEM_ADDED, actions)(payload)

        assert result == {"id": "inv-1", "category_status": "added"}
        actions.add_inventory_item.assert_awaited_once_with("t1", "Milk", "L")
        actions.toggle_category_item.assert_awaited_once_with("t1", "c1", "inv-1")

    @pytest.mark.asyncio
    async def test_inventory_item_added_without_category(self, actions: AsyncMock) -> None:
        payload = parse_payload(
            DomainEventType.INVENTORY_ITEM_ADDED,
            {"tenant_id": "t1", "name": "Milk", "quantity_type_key": "L"},
        )

        result = await resolve_handler(DomainEventType.INVENTORY_ITEM_ADDED, actions)(payload)

        assert result == {"id": "inv-1"}
        actions.toggle_category_item.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transaction_added(self, actions: AsyncMock) -> None:
        payload = parse_payload(
            DomainEventType.INVENTORY_TRANSACTION_ADDED,
            {
                "tenant_id": "t1",
                "item_id": "inv-1",
                "type": "IN",
                "price": 10.0,
                "quantity": 2.0,
                "quantity_type_value": "L",
            },
        )
        await resolve_handler(DomainEventType.INVENTORY_TRANSACTION_ADDED, actions)(payload)
        actions.add_transaction.assert_awaited_once_with("t1", "inv-1", "IN", 10.0, 2.0, "L")

    @pytest.mark.asyncio
    async def test_admin_audit_logged(self, actions: AsyncMock) -> None:
        payload = parse_payload(
            DomainEventType.ADMIN_AUDIT_LOGGED,
            {"tenant_id": "t1", "admin_id": "a1", "action": "impersonate", "target_tenant_id": "t2"},
        )
        await resolve_handler(DomainEventType.ADMIN_AUDIT_LOGGED, actions)(payload)
        actions.log_admin_audit.assert_awaited_once_with(
            "t1",
            admin_id="a1",
            action="impersonate",
            role=None,
            target_tenant_id="t2",
            metadata=None,
        )

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self, actions: AsyncMock) -> None:
        actions.close_order.side_effect = RuntimeError("order locked")
        payload = parse_payload(DomainEventType.ORDER_CLOSED, {"tenant_id": "t1", "order_id": "o1"})

        with pytest.raises(RuntimeError, match="order locked"):
            await resolve_handler(DomainEventType.ORDER_CLOSED, actions)(payload)
