"""Routing from domain events to cache invalidation notices.

Shared by the server-side relay (which turns event-log rows into notices)
and the client (which turns notices into cache evictions).  The registry is
keyed on the raw ``event_type`` string because the log also contains types
written by producers other than the dispatcher.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Operation = Literal["INSERT", "UPDATE", "DELETE"]


class NotifyTable(str, Enum):
    """Resource tables that clients hold cached views of."""

    ORDERS = "orders"
    ORDER_ITEMS = "order_items"
    PRODUCTS = "products"
    INVENTORY_ITEMS = "inventory_items"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"


NOTIFY_TABLES: frozenset[str] = frozenset(t.value for t in NotifyTable)

# event_type -> tables touched.  Tables outside NOTIFY_TABLES are dropped
# by tables_for_event_type().
EVENT_TYPE_TO_TABLES: dict[str, tuple[str, ...]] = {
    # Orders
    "order.created": ("orders",),
    "order.item.updated": ("orders", "order_items"),
    "order.split": ("orders", "order_items"),
    "order.combined": ("orders", "order_items"),
    "order.closed": ("orders",),
    "order.opened": ("orders",),
    "order.payment.toggled": ("orders", "order_items"),
    "order.payment.set": ("orders", "order_items"),
    "order.takeaway.toggled": ("orders", "order_items"),
    "order.products.removed": ("orders", "order_items"),
    "order.batch.closed": ("orders", "order_items"),
    # Products
    "product.upserted": ("products",),
    "product.consumption.added": ("product_consumptions",),
    "product.consumption.removed": ("product_consumptions",),
    # Extras
    "extra.upserted": ("extras",),
    "extra.deleted": ("extras",),
    "order.item.extra.toggled": ("order_item_extras",),
    # Inventory
    "inventory.item.added": ("inventory_items",),
    "inventory.item.toggled": ("inventory_items",),
    "inventory.item.deleted": ("inventory_items",),
    "inventory.transaction.added": ("transactions",),
    "inventory.transaction.upserted": ("transactions",),
    "inventory.transaction.deleted": ("transactions",),
    "inventory.eod.reconciled": ("inventory_items", "transactions"),
    "inventory.category.upserted": ("categories",),
    "inventory.category.deleted": ("categories",),
    "inventory.category.item.toggled": ("categories", "inventory_items"),
    # Platform
    "platform_alert.created": ("platform_alerts",),
}

# Client query keys to evict per table.  Each key is a path prefix.
TABLE_INVALIDATION_MAP: dict[NotifyTable, tuple[tuple[str, ...], ...]] = {
    NotifyTable.ORDERS: (("orders", "list"), ("orders", "getDetails")),
    NotifyTable.ORDER_ITEMS: (("orders", "list"), ("orders", "getDetails")),
    NotifyTable.PRODUCTS: (("products", "list"), ("products", "export")),
    NotifyTable.INVENTORY_ITEMS: (("inventory", "items", "list"),),
    NotifyTable.CATEGORIES: (("inventory", "categories", "list"),),
    NotifyTable.TRANSACTIONS: (("inventory", "transactions", "list"),),
}

_ENTITY_ID_KEYS: tuple[str, ...] = ("order_id", "id", "item_id")


class InvalidationNotice(BaseModel):
    """Lightweight notice telling clients that *table* changed."""

    table: NotifyTable
    operation: Operation
    id: str = ""
    cursor: int


def tables_for_event_type(event_type: str) -> list[NotifyTable]:
    """Return the notify tables affected by *event_type* (empty when unknown)."""
    return [NotifyTable(t) for t in EVENT_TYPE_TO_TABLES.get(event_type, ()) if t in NOTIFY_TABLES]


def operation_for_event_type(event_type: str) -> Operation:
    """Derive the row operation from the event-type name by substring."""
    if "created" in event_type or "added" in event_type:
        return "INSERT"
    if "deleted" in event_type or "removed" in event_type:
        return "DELETE"
    return "UPDATE"


def extract_entity_id(payload: Any) -> str:
    """Best-effort affected-entity id from an event payload.

    Tries ``order_id``, ``id`` and ``item_id`` in that order and returns the
    first truthy value as a string.  Payloads stored as JSON text are
    decoded first.  Anything unparseable yields ``""``.
    """
    try:
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        if not isinstance(payload, dict):
            return ""
        for key in _ENTITY_ID_KEYS:
            value = payload.get(key)
            if value:
                return str(value)
    except ValueError:
        logger.debug("Unparseable event payload; entity id omitted")
    return ""


def notices_for_event(event_id: int, event_type: str, payload: Any) -> list[InvalidationNotice]:
    """Build one notice per affected notify table for a single log row."""
    tables = tables_for_event_type(event_type)
    if not tables:
        return []
    operation = operation_for_event_type(event_type)
    entity_id = extract_entity_id(payload)
    return [InvalidationNotice(table=t, operation=operation, id=entity_id, cursor=event_id) for t in tables]
