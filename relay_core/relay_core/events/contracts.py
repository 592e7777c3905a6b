"""Closed set of domain event types and their payload schemas.

Every event that can be dispatched has a member in :class:`DomainEventType`
and a pydantic payload model registered in :data:`PAYLOAD_MODELS`.  All
payloads carry the owning ``tenant_id``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class DomainEventType(str, Enum):
    """Domain actions recorded in the event log."""

    ORDER_CREATED = "order.created"
    ORDER_ITEM_UPDATED = "order.item.updated"
    ORDER_SPLIT = "order.split"
    ORDER_CLOSED = "order.closed"
    ORDER_PAYMENT_TOGGLED = "order.payment.toggled"
    ORDER_TAKEAWAY_TOGGLED = "order.takeaway.toggled"
    ORDER_PRODUCTS_REMOVED = "order.products.removed"
    PRODUCT_UPSERTED = "product.upserted"
    INVENTORY_ITEM_ADDED = "inventory.item.added"
    INVENTORY_ITEM_TOGGLED = "inventory.item.toggled"
    INVENTORY_ITEM_DELETED = "inventory.item.deleted"
    INVENTORY_TRANSACTION_ADDED = "inventory.transaction.added"
    INVENTORY_TRANSACTION_DELETED = "inventory.transaction.deleted"
    INVENTORY_CATEGORY_UPSERTED = "inventory.category.upserted"
    INVENTORY_CATEGORY_DELETED = "inventory.category.deleted"
    INVENTORY_CATEGORY_ITEM_TOGGLED = "inventory.category.item.toggled"
    EXTRA_UPSERTED = "extra.upserted"
    EXTRA_DELETED = "extra.deleted"
    ORDER_ITEM_EXTRA_TOGGLED = "order.item.extra.toggled"
    ADMIN_AUDIT_LOGGED = "admin.audit.logged"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    """Fields shared by every domain event payload."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(..., min_length=1)


class OrderCreated(EventPayload):
    time_zone: str = "UTC"


class OrderItemUpdated(EventPayload):
    order_id: str
    product_id: str
    type: Literal["INSERT", "DELETE"]


class OrderSplit(EventPayload):
    old_order_id: str
    item_ids: list[int]


class OrderClosed(EventPayload):
    order_id: str


class OrderPaymentToggled(EventPayload):
    item_ids: list[int]


class OrderTakeawayToggled(EventPayload):
    item_ids: list[int]


class OrderProductsRemoved(EventPayload):
    order_id: str
    item_ids: list[int]


class ProductUpserted(EventPayload):
    id: str | None = None
    name: str
    price: float
    tags: str = ""


class InventoryItemAdded(EventPayload):
    name: str
    quantity_type_key: str
    category_id: str | None = None


class InventoryItemToggled(EventPayload):
    id: str


class InventoryItemDeleted(EventPayload):
    id: str


class InventoryTransactionAdded(EventPayload):
    item_id: str
    type: Literal["IN", "OUT"]
    price: float
    quantity: float
    quantity_type_value: str


class InventoryTransactionDeleted(EventPayload):
    id: int


class InventoryCategoryUpserted(EventPayload):
    name: str
    id: str | None = None


class InventoryCategoryDeleted(EventPayload):
    id: str


class InventoryCategoryItemToggled(EventPayload):
    category_id: str
    item_id: str


class ExtraUpserted(EventPayload):
    id: str | None = None
    name: str
    price: float


class ExtraDeleted(EventPayload):
    id: str


class OrderItemExtraToggled(EventPayload):
    order_item_id: int
    extra_id: str


class AdminAuditLogged(EventPayload):
    admin_id: str
    role: str | None = None
    action: str
    target_tenant_id: str | None = None
    metadata: dict[str, Any] | None = None


PAYLOAD_MODELS: dict[DomainEventType, type[EventPayload]] = {
    DomainEventType.ORDER_CREATED: OrderCreated,
    DomainEventType.ORDER_ITEM_UPDATED: OrderItemUpdated,
    DomainEventType.ORDER_SPLIT: OrderSplit,
    DomainEventType.ORDER_CLOSED: OrderClosed,
    DomainEventType.ORDER_PAYMENT_TOGGLED: OrderPaymentToggled,
    DomainEventType.ORDER_TAKEAWAY_TOGGLED: OrderTakeawayToggled,
    DomainEventType.ORDER_PRODUCTS_REMOVED: OrderProductsRemoved,
    DomainEventType.PRODUCT_UPSERTED: ProductUpserted,
    DomainEventType.INVENTORY_ITEM_ADDED: InventoryItemAdded,
    DomainEventType.INVENTORY_ITEM_TOGGLED: InventoryItemToggled,
    DomainEventType.INVENTORY_ITEM_DELETED: InventoryItemDeleted,
    DomainEventType.INVENTORY_TRANSACTION_ADDED: InventoryTransactionAdded,
    DomainEventType.INVENTORY_TRANSACTION_DELETED: InventoryTransactionDeleted,
    DomainEventType.INVENTORY_CATEGORY_UPSERTED: InventoryCategoryUpserted,
    DomainEventType.INVENTORY_CATEGORY_DELETED: InventoryCategoryDeleted,
    DomainEventType.INVENTORY_CATEGORY_ITEM_TOGGLED: InventoryCategoryItemToggled,
    DomainEventType.EXTRA_UPSERTED: ExtraUpserted,
    DomainEventType.EXTRA_DELETED: ExtraDeleted,
    DomainEventType.ORDER_ITEM_EXTRA_TOGGLED: OrderItemExtraToggled,
    DomainEventType.ADMIN_AUDIT_LOGGED: AdminAuditLogged,
}


def parse_payload(event_type: DomainEventType, raw: dict[str, Any] | EventPayload) -> EventPayload:
    """Validate *raw* against the payload model for *event_type*.

    Raises
    ------
    pydantic.ValidationError
        If *raw* does not match the schema.  ``ValidationError`` subclasses
        ``ValueError``.
    TypeError
        If an already-built payload of the wrong model is passed.
    """
    model = PAYLOAD_MODELS[event_type]
    if isinstance(raw, EventPayload):
        if not isinstance(raw, model):
            raise TypeError(f"{event_type.value} expects {model.__name__}, got {type(raw).__name__}")
        return raw
    return model.model_validate(raw)
