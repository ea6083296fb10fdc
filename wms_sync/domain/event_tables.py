"""
Declarative event tables for the webhook queue and the order coordinator.

- EVENT_PRIORITIES: (group, action) -> dequeue priority (lower first)
- EVENT_PREREQUISITES: (group, action) -> event that must be processed first
- STATUS_MAPPING: remote order status -> local order status

validate_event_tables() is called on application and worker start-up so a
broken table stops the process instead of silently mis-ordering jobs.
"""
from __future__ import annotations

import enum
from typing import Mapping

from wms_sync.core.exceptions import EventTableError
from wms_sync.db.models.order import OrderStatus

UNMAPPED_PRIORITY = 999


class WebhookGroup(str, enum.Enum):
    ORDER = "order"
    STOCK = "stock"
    SHIPMENT = "shipment"
    INBOUND = "inbound"
    ARTICLE = "article"
    VARIANT = "variant"


EventKey = tuple[WebhookGroup, str]

SUPPORTED_ACTIONS: Mapping[WebhookGroup, tuple[str, ...]] = {
    WebhookGroup.ORDER: ("created", "updated", "planned", "processing", "shipped"),
    WebhookGroup.STOCK: ("updated", "adjustment"),
    WebhookGroup.SHIPMENT: ("created", "updated", "shipped", "delivered"),
    WebhookGroup.INBOUND: ("created", "updated", "completed"),
    WebhookGroup.ARTICLE: ("created", "updated", "deleted"),
    WebhookGroup.VARIANT: ("updated",),
}

EVENT_PRIORITIES: Mapping[EventKey, int] = {
    # order lifecycle first
    (WebhookGroup.ORDER, "created"): 1,
    (WebhookGroup.ORDER, "updated"): 2,
    (WebhookGroup.ORDER, "planned"): 3,
    (WebhookGroup.ORDER, "processing"): 4,
    (WebhookGroup.ORDER, "shipped"): 5,
    (WebhookGroup.STOCK, "updated"): 10,
    (WebhookGroup.STOCK, "adjustment"): 11,
    (WebhookGroup.SHIPMENT, "created"): 15,
    (WebhookGroup.SHIPMENT, "updated"): 16,
    (WebhookGroup.SHIPMENT, "shipped"): 17,
    (WebhookGroup.SHIPMENT, "delivered"): 18,
    (WebhookGroup.INBOUND, "created"): 20,
    (WebhookGroup.INBOUND, "updated"): 21,
    (WebhookGroup.INBOUND, "completed"): 22,
    (WebhookGroup.ARTICLE, "created"): 30,
    (WebhookGroup.ARTICLE, "updated"): 31,
    (WebhookGroup.ARTICLE, "deleted"): 32,
    (WebhookGroup.VARIANT, "updated"): 33,
}

EVENT_PREREQUISITES: Mapping[EventKey, EventKey] = {
    (WebhookGroup.ORDER, "updated"): (WebhookGroup.ORDER, "created"),
    (WebhookGroup.ORDER, "planned"): (WebhookGroup.ORDER, "created"),
    (WebhookGroup.ORDER, "processing"): (WebhookGroup.ORDER, "created"),
    (WebhookGroup.ORDER, "shipped"): (WebhookGroup.ORDER, "created"),
    (WebhookGroup.SHIPMENT, "updated"): (WebhookGroup.SHIPMENT, "created"),
    (WebhookGroup.SHIPMENT, "shipped"): (WebhookGroup.SHIPMENT, "created"),
    (WebhookGroup.SHIPMENT, "delivered"): (WebhookGroup.SHIPMENT, "created"),
}

# dependent events that may skip their prerequisite when the local order already exists
PREREQUISITE_BYPASS: frozenset[tuple[EventKey, EventKey]] = frozenset({
    ((WebhookGroup.ORDER, "updated"), (WebhookGroup.ORDER, "created")),
})

STATUS_MAPPING: Mapping[str, OrderStatus] = {
    "created": OrderStatus.PROCESSING,
    "plannable": OrderStatus.PROCESSING,
    "planned": OrderStatus.PROCESSING,
    "processing": OrderStatus.PROCESSING,
    "partially_shipped": OrderStatus.PROCESSING,
    "shipped": OrderStatus.COMPLETED,
    "on_hold": OrderStatus.ON_HOLD,
    "problem": OrderStatus.ON_HOLD,
    "backorder": OrderStatus.ON_HOLD,
    "awaiting_documents": OrderStatus.ON_HOLD,
    "restock": OrderStatus.ON_HOLD,
    "invalid_address": OrderStatus.ON_HOLD,
    "shipment_waiting_for_ewh": OrderStatus.ON_HOLD,
    "cancelled": OrderStatus.CANCELLED,
    "invalid": OrderStatus.CANCELLED,
}

DEFAULT_LOCAL_STATUS = OrderStatus.PROCESSING


def _group(value: str) -> WebhookGroup | None:
    try:
        return WebhookGroup(value)
    except ValueError:
        return None


def get_priority(group: str, action: str) -> int:
    g = _group(group)
    if g is None:
        return UNMAPPED_PRIORITY
    return EVENT_PRIORITIES.get((g, action), UNMAPPED_PRIORITY)


def get_prerequisite(group: str, action: str) -> EventKey | None:
    g = _group(group)
    if g is None:
        return None
    return EVENT_PREREQUISITES.get((g, action))


def format_event(key: EventKey) -> str:
    return f"{key[0].value}.{key[1]}"


def parse_event(value: str) -> tuple[str, str]:
    group, _, action = value.partition(".")
    return group, action


def bypass_allowed(group: str, action: str, prerequisite_event: str) -> bool:
    g = _group(group)
    pg, paction = parse_event(prerequisite_event)
    pgroup = _group(pg)
    if g is None or pgroup is None:
        return False
    return ((g, action), (pgroup, paction)) in PREREQUISITE_BYPASS


def map_remote_status(remote_status: str | None) -> OrderStatus:
    """Fixed remote -> local status mapping; anything unknown is processing"""
    if not remote_status:
        return DEFAULT_LOCAL_STATUS
    return STATUS_MAPPING.get(remote_status.strip().lower(), DEFAULT_LOCAL_STATUS)


def validate_event_tables(
    supported: Mapping[WebhookGroup, tuple[str, ...]] = SUPPORTED_ACTIONS,
    priorities: Mapping[EventKey, int] = EVENT_PRIORITIES,
    prerequisites: Mapping[EventKey, EventKey] = EVENT_PREREQUISITES,
    bypasses: frozenset[tuple[EventKey, EventKey]] = PREREQUISITE_BYPASS,
) -> None:
    """
    Check the tables cover every supported event consistently.

    Raises:
        EventTableError: listing every problem found
    """
    problems: list[str] = []
    supported_keys = {(g, a) for g, actions in supported.items() for a in actions}

    for group in WebhookGroup:
        if not supported.get(group):
            problems.append(f"group '{group.value}' has no supported actions")

    for key in sorted(supported_keys, key=format_event):
        if key not in priorities:
            problems.append(f"{format_event(key)} has no priority")

    for key, priority in priorities.items():
        if key not in supported_keys:
            problems.append(f"priority declared for unsupported event {format_event(key)}")
        if not 0 < priority < UNMAPPED_PRIORITY:
            problems.append(f"{format_event(key)} priority {priority} outside 1..{UNMAPPED_PRIORITY - 1}")

    for key, prerequisite in prerequisites.items():
        if key == prerequisite:
            problems.append(f"{format_event(key)} is its own prerequisite")
            continue
        if key not in supported_keys or prerequisite not in supported_keys:
            problems.append(
                f"prerequisite {format_event(key)} -> {format_event(prerequisite)} names an unsupported event"
            )
            continue
        if priorities.get(prerequisite, UNMAPPED_PRIORITY) >= priorities.get(key, UNMAPPED_PRIORITY):
            problems.append(
                f"prerequisite {format_event(prerequisite)} must rank before {format_event(key)}"
            )

    for dependent, prerequisite in bypasses:
        if prerequisites.get(dependent) != prerequisite:
            problems.append(
                f"bypass {format_event(dependent)} -> {format_event(prerequisite)} has no matching prerequisite"
            )

    if problems:
        raise EventTableError(problems)
