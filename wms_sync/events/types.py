"""
Typed event types, their priority tiers and prerequisite rules.

An event type is a ``(group, action)`` pair such as ``order.created``. The
group is a closed set; actions are free-form strings so new WMS actions can
arrive without a code change (they get the default priority and, unless a
handler is registered, fail with "no handler").
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from wms_sync.events.errors import MalformedEventError


class EventGroup(Enum):
    ORDER = "order"
    STOCK = "stock"
    SHIPMENT = "shipment"
    INBOUND = "inbound"
    ARTICLE = "article"
    VARIANT = "variant"


@dataclass(frozen=True)
class EventType:
    group: EventGroup
    action: str

    @classmethod
    def parse(cls, group, action) -> "EventType":
        """Build an EventType from raw group/action strings, normalising case."""
        if isinstance(group, EventGroup):
            group_value = group
        else:
            try:
                group_value = EventGroup(str(group or "").strip().lower())
            except ValueError:
                raise MalformedEventError(f"Unknown event group: {group!r}")

        action_value = str(action or "").strip().lower()
        if not action_value:
            raise MalformedEventError("Event action is required")

        return cls(group_value, action_value)

    @classmethod
    def from_topic(cls, topic: str) -> "EventType":
        """Parse a ``group.action`` topic string."""
        group, sep, action = (topic or "").partition(".")
        if not sep:
            raise MalformedEventError(f"Invalid event topic: {topic!r}")
        return cls.parse(group, action)

    def __str__(self):
        return f"{self.group.value}.{self.action}"


ORDER_CREATED = EventType(EventGroup.ORDER, "created")
ORDER_UPDATED = EventType(EventGroup.ORDER, "updated")
ORDER_PLANNED = EventType(EventGroup.ORDER, "planned")
ORDER_PROCESSING = EventType(EventGroup.ORDER, "processing")
ORDER_SHIPPED = EventType(EventGroup.ORDER, "shipped")
STOCK_UPDATED = EventType(EventGroup.STOCK, "updated")
STOCK_ADJUSTMENT = EventType(EventGroup.STOCK, "adjustment")
SHIPMENT_CREATED = EventType(EventGroup.SHIPMENT, "created")
SHIPMENT_UPDATED = EventType(EventGroup.SHIPMENT, "updated")
SHIPMENT_SHIPPED = EventType(EventGroup.SHIPMENT, "shipped")
SHIPMENT_DELIVERED = EventType(EventGroup.SHIPMENT, "delivered")
INBOUND_CREATED = EventType(EventGroup.INBOUND, "created")
INBOUND_UPDATED = EventType(EventGroup.INBOUND, "updated")
INBOUND_COMPLETED = EventType(EventGroup.INBOUND, "completed")
ARTICLE_CREATED = EventType(EventGroup.ARTICLE, "created")
ARTICLE_UPDATED = EventType(EventGroup.ARTICLE, "updated")
ARTICLE_DELETED = EventType(EventGroup.ARTICLE, "deleted")
VARIANT_UPDATED = EventType(EventGroup.VARIANT, "updated")

DEFAULT_PRIORITY = 999

# Lower value = processed first
EVENT_PRIORITIES: Dict[EventType, int] = {
    ORDER_CREATED: 1,
    ORDER_UPDATED: 2,
    ORDER_PLANNED: 3,
    ORDER_PROCESSING: 4,
    ORDER_SHIPPED: 5,
    STOCK_UPDATED: 10,
    STOCK_ADJUSTMENT: 11,
    SHIPMENT_CREATED: 15,
    SHIPMENT_UPDATED: 16,
    SHIPMENT_SHIPPED: 17,
    SHIPMENT_DELIVERED: 18,
    INBOUND_CREATED: 20,
    INBOUND_UPDATED: 21,
    INBOUND_COMPLETED: 22,
    ARTICLE_CREATED: 30,
    ARTICLE_UPDATED: 31,
    ARTICLE_DELETED: 32,
    VARIANT_UPDATED: 33,
}

# Types that must be completed for the same entity key first
PREREQUISITE_RULES: Dict[EventType, Tuple[EventType, ...]] = {
    ORDER_UPDATED: (ORDER_CREATED,),
    ORDER_PLANNED: (ORDER_CREATED,),
    ORDER_PROCESSING: (ORDER_CREATED,),
    ORDER_SHIPPED: (ORDER_CREATED,),
    SHIPMENT_UPDATED: (SHIPMENT_CREATED,),
    SHIPMENT_SHIPPED: (SHIPMENT_CREATED,),
    SHIPMENT_DELIVERED: (SHIPMENT_CREATED,),
}

# Completions of these types are kept as entity milestones
PREREQUISITE_TARGETS = frozenset(t for required in PREREQUISITE_RULES.values() for t in required)


def priority_for(event_type: EventType) -> int:
    return EVENT_PRIORITIES.get(event_type, DEFAULT_PRIORITY)
