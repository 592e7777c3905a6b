"""Handler registry for domain events.

:func:`resolve_handler` is a total function over :class:`DomainEventType`:
the ``match`` ends in :func:`typing.assert_never`, so adding an enum member
without a matching case is rejected by the type checker.

Handlers translate a validated payload into a call on :class:`DomainActions`,
the storage-level operations for orders, products and inventory owned by
the host application.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any, Protocol, assert_never

from relay_core.events.contracts import (
    AdminAuditLogged,
    DomainEventType,
    EventPayload,
    ExtraDeleted,
    ExtraUpserted,
    InventoryCategoryDeleted,
    InventoryCategoryItemToggled,
    InventoryCategoryUpserted,
    InventoryItemAdded,
    InventoryItemDeleted,
    InventoryItemToggled,
    InventoryTransactionAdded,
    InventoryTransactionDeleted,
    OrderClosed,
    OrderCreated,
    OrderItemExtraToggled,
    OrderItemUpdated,
    OrderPaymentToggled,
    OrderProductsRemoved,
    OrderSplit,
    OrderTakeawayToggled,
    ProductUpserted,
)

EventHandler = Callable[[EventPayload], Awaitable[Any]]


class DomainActions(Protocol):
    """Storage operations the host application exposes to the dispatcher.

    Every method is tenant-scoped and returns a JSON-serialisable result.
    """

    async def insert_order(self, tenant_id: str, time_zone: str) -> Any: ...

    async def update_order_item(self, tenant_id: str, order_id: str, product_id: str, op: str) -> Any: ...

    async def split_order(self, tenant_id: str, old_order_id: str, item_ids: list[int]) -> Any: ...

    async def close_order(self, tenant_id: str, order_id: str) -> Any: ...

    async def toggle_payment_option(self, tenant_id: str, item_ids: list[int]) -> Any: ...

    async def toggle_takeaway(self, tenant_id: str, item_ids: list[int]) -> Any: ...

    async def remove_products(self, tenant_id: str, order_id: str, item_ids: list[int]) -> Any: ...

    async def upsert_product(
        self, tenant_id: str, *, product_id: str | None, name: str, price: float, tags: str
    ) -> Any: ...

    async def add_inventory_item(self, tenant_id: str, name: str, quantity_type_key: str) -> dict[str, Any]: ...

    async def toggle_inventory_item(self, tenant_id: str, item_id: str) -> Any: ...

    async def delete_inventory_item(self, tenant_id: str, item_id: str) -> Any: ...

    async def add_transaction(
        self,
        tenant_id: str,
        item_id: str,
        direction: str,
        price: float,
        quantity: float,
        quantity_type_value: str,
    ) -> Any: ...

    async def delete_transaction(self, tenant_id: str, transaction_id: int) -> Any: ...

    async def upsert_category(self, tenant_id: str, name: str, category_id: str | None) -> Any: ...

    async def delete_category(self, tenant_id: str, category_id: str) -> Any: ...

    async def toggle_category_item(self, tenant_id: str, category_id: str, item_id: str) -> Any: ...

    async def upsert_extra(self, tenant_id: str, *, extra_id: str | None, name: str, price: float) -> Any: ...

    async def delete_extra(self, tenant_id: str, extra_id: str) -> Any: ...

    async def toggle_order_item_extra(self, tenant_id: str, order_item_id: int, extra_id: str) -> Any: ...

    async def log_admin_audit(
        self,
        tenant_id: str,
        *,
        admin_id: str,
        action: str,
        role: str | None,
        target_tenant_id: str | None,
        metadata: dict[str, Any] | None,
    ) -> Any: ...


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


async def _order_created(actions: DomainActions, payload: OrderCreated) -> Any:
    return await actions.insert_order(payload.tenant_id, payload.time_zone)


async def _order_item_updated(actions: DomainActions, payload: OrderItemUpdated) -> Any:
    return await actions.update_order_item(payload.tenant_id, payload.order_id, payload.product_id, payload.type)


async def _order_split(actions: DomainActions, payload: OrderSplit) -> Any:
    return await actions.split_order(payload.tenant_id, payload.old_order_id, payload.item_ids)


async def _order_closed(actions: DomainActions, payload: OrderClosed) -> Any:
    return await actions.close_order(payload.tenant_id, payload.order_id)


async def _order_payment_toggled(actions: DomainActions, payload: OrderPaymentToggled) -> Any:
    return await actions.toggle_payment_option(payload.tenant_id, payload.item_ids)


async def _order_takeaway_toggled(actions: DomainActions, payload: OrderTakeawayToggled) -> Any:
    return await actions.toggle_takeaway(payload.tenant_id, payload.item_ids)


async def _order_products_removed(actions: DomainActions, payload: OrderProductsRemoved) -> Any:
    return await actions.remove_products(payload.tenant_id, payload.order_id, payload.item_ids)


async def _order_item_extra_toggled(actions: DomainActions, payload: OrderItemExtraToggled) -> Any:
    return await actions.toggle_order_item_extra(payload.tenant_id, payload.order_item_id, payload.extra_id)


# ---------------------------------------------------------------------------
# Products and extras
# ---------------------------------------------------------------------------


async def _product_upserted(actions: DomainActions, payload: ProductUpserted) -> Any:
    return await actions.upsert_product(
        payload.tenant_id,
        product_id=payload.id,
        name=payload.name,
        price=payload.price,
        tags=payload.tags,
    )


async def _extra_upserted(actions: DomainActions, payload: ExtraUpserted) -> Any:
    return await actions.upsert_extra(payload.tenant_id, extra_id=payload.id, name=payload.name, price=payload.price)


async def _extra_deleted(actions: DomainActions, payload: ExtraDeleted) -> Any:
    return await actions.delete_extra(payload.tenant_id, payload.id)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


async def _inventory_item_added(actions: DomainActions, payload: InventoryItemAdded) -> Any:
    """Add the item, then attach it to ``category_id`` when one was given."""
    item = await actions.add_inventory_item(payload.tenant_id, payload.name, payload.quantity_type_key)
    result: dict[str, Any] = {"id": item["id"]}
    if payload.category_id:
        result["category_status"] = await actions.toggle_category_item(
            payload.tenant_id, payload.category_id, item["id"]
        )
    return result


async def _inventory_item_toggled(actions: DomainActions, payload: InventoryItemToggled) -> Any:
    return await actions.toggle_inventory_item(payload.tenant_id, payload.id)


async def _inventory_item_deleted(actions: DomainActions, payload: InventoryItemDeleted) -> Any:
    return await actions.delete_inventory_item(payload.tenant_id, payload.id)


async def _inventory_transaction_added(actions: DomainActions, payload: InventoryTransactionAdded) -> Any:
    return await actions.add_transaction(
        payload.tenant_id,
        payload.item_id,
        payload.type,
        payload.price,
        payload.quantity,
        payload.quantity_type_value,
    )


async def _inventory_transaction_deleted(actions: DomainActions, payload: InventoryTransactionDeleted) -> Any:
    return await actions.delete_transaction(payload.tenant_id, payload.id)


async def _inventory_category_upserted(actions: DomainActions, payload: InventoryCategoryUpserted) -> Any:
    return await actions.upsert_category(payload.tenant_id, payload.name, payload.id)


async def _inventory_category_deleted(actions: DomainActions, payload: InventoryCategoryDeleted) -> Any:
    return await actions.delete_category(payload.tenant_id, payload.id)


async def _inventory_category_item_toggled(actions: DomainActions, payload: InventoryCategoryItemToggled) -> Any:
    return await actions.toggle_category_item(payload.tenant_id, payload.category_id, payload.item_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


async def _admin_audit_logged(actions: DomainActions, payload: AdminAuditLogged) -> Any:
    return await actions.log_admin_audit(
        payload.tenant_id,
        admin_id=payload.admin_id,
        action=payload.action,
        role=payload.role,
        target_tenant_id=payload.target_tenant_id,
        metadata=payload.metadata,
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def resolve_handler(event_type: DomainEventType, actions: DomainActions) -> EventHandler:
    """Return the handler for *event_type*, bound to *actions*."""
    handler: Callable[..., Awaitable[Any]]
    match event_type:
        case DomainEventType.ORDER_CREATED:
            handler = _order_created
        case DomainEventType.ORDER_ITEM_UPDATED:
            handler = _order_item_updated
        case DomainEventType.ORDER_SPLIT:
            handler = _order_split
        case DomainEventType.ORDER_CLOSED:
            handler = _order_closed
        case DomainEventType.ORDER_PAYMENT_TOGGLED:
            handler = _order_payment_toggled
        case DomainEventType.ORDER_TAKEAWAY_TOGGLED:
            handler = _order_takeaway_toggled
        case DomainEventType.ORDER_PRODUCTS_REMOVED:
            handler = _order_products_removed
        case DomainEventType.PRODUCT_UPSERTED:
            handler = _product_upserted
        case DomainEventType.INVENTORY_ITEM_ADDED:
            handler = _inventory_item_added
        case DomainEventType.INVENTORY_ITEM_TOGGLED:
            handler = _inventory_item_toggled
        case DomainEventType.INVENTORY_ITEM_DELETED:
            handler = _inventory_item_deleted
        case DomainEventType.INVENTORY_TRANSACTION_ADDED:
            handler = _inventory_transaction_added
        case DomainEventType.INVENTORY_TRANSACTION_DELETED:
            handler = _inventory_transaction_deleted
        case DomainEventType.INVENTORY_CATEGORY_UPSERTED:
            handler = _inventory_category_upserted
        case DomainEventType.INVENTORY_CATEGORY_DELETED:
            handler = _inventory_category_deleted
        case DomainEventType.INVENTORY_CATEGORY_ITEM_TOGGLED:
            handler = _inventory_category_item_toggled
        case DomainEventType.EXTRA_UPSERTED:
            handler = _extra_upserted
        case DomainEventType.EXTRA_DELETED:
            handler = _extra_deleted
        case DomainEventType.ORDER_ITEM_EXTRA_TOGGLED:
            handler = _order_item_extra_toggled
        case DomainEventType.ADMIN_AUDIT_LOGGED:
            handler = _admin_audit_logged
        case _:
            assert_never(event_type)
    return partial(handler, actions)
