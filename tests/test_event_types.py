"""
Tests for typed event types, priorities, prerequisite rules and envelope parsing.
"""
import pytest

from wms_sync.events.envelope import InboundEnvelope
from wms_sync.events.errors import MalformedEventError
from wms_sync.events.types import (
    EventGroup,
    EventType,
    DEFAULT_PRIORITY,
    PREREQUISITE_RULES,
    priority_for,
    ORDER_CREATED,
    ORDER_UPDATED,
    SHIPMENT_CREATED,
    SHIPMENT_DELIVERED,
    STOCK_UPDATED,
)


class TestEventType:

    def test_parse_normalises_case_and_whitespace(self):
        assert EventType.parse(" Order ", "CREATED") == ORDER_CREATED

    def test_from_topic(self):
        assert EventType.from_topic("shipment.delivered") == SHIPMENT_DELIVERED
        assert str(SHIPMENT_DELIVERED) == "shipment.delivered"

    def test_unknown_group_is_malformed(self):
        with pytest.raises(MalformedEventError):
            EventType.parse("invoice", "created")

    def test_missing_action_is_malformed(self):
        with pytest.raises(MalformedEventError):
            EventType.parse("order", "")

    def test_topic_without_dot_is_malformed(self):
        with pytest.raises(MalformedEventError):
            EventType.from_topic("order")

    def test_types_are_hashable_and_equal_by_value(self):
        assert {EventType(EventGroup.ORDER, "created"): 1}[ORDER_CREATED] == 1


class TestPriorities:

    def test_lifecycle_tiers(self):
        """Order events < stock < shipment < inbound/article events."""
        assert priority_for(ORDER_CREATED) < priority_for(ORDER_UPDATED)
        assert priority_for(ORDER_UPDATED) < priority_for(STOCK_UPDATED)
        assert priority_for(STOCK_UPDATED) < priority_for(SHIPMENT_CREATED)
        assert priority_for(SHIPMENT_DELIVERED) < priority_for(EventType.from_topic("inbound.created"))
        assert priority_for(EventType.from_topic("inbound.completed")) < priority_for(
            EventType.from_topic("article.created"))

    def test_unknown_action_gets_default_priority(self):
        assert priority_for(EventType.from_topic("order.cancelled")) == DEFAULT_PRIORITY


class TestPrerequisiteRules:

    def test_order_dependents_require_created(self):
        for action in ("updated", "planned", "processing", "shipped"):
            assert PREREQUISITE_RULES[EventType.from_topic(f"order.{action}")] == (ORDER_CREATED,)

    def test_shipment_dependents_require_created(self):
        for action in ("updated", "shipped", "delivered"):
            assert PREREQUISITE_RULES[EventType.from_topic(f"shipment.{action}")] == (SHIPMENT_CREATED,)

    def test_created_events_have_no_prerequisites(self):
        assert ORDER_CREATED not in PREREQUISITE_RULES
        assert STOCK_UPDATED not in PREREQUISITE_RULES


# ==============================================================================
# Envelope parsing
# ==============================================================================

class TestInboundEnvelope:

    def test_header_delivery_id_and_external_reference(self):
        data = {
            "group": "order",
            "action": "updated",
            "entityId": "9001",
            "body": {"external_reference": "O-100", "status": "planned"},
        }
        envelope = InboundEnvelope.from_webhook(data, {"X-Webhook-Id": "abc-1"})

        assert envelope.delivery_id == "abc-1"
        assert envelope.event_type == ORDER_UPDATED
        assert envelope.entity_key == "O-100"
        assert envelope.payload is data

    def test_entity_id_fallback(self):
        data = {"group": "stock", "action": "updated", "entityId": 42, "body": {}}
        envelope = InboundEnvelope.from_webhook(data, {"X-Webhook-Id": "abc-2"})
        assert envelope.entity_key == "42"

    @pytest.mark.parametrize("body, expected", [
        ({"sku": "SKU-1", "article_code": "A-1", "external_reference": "X-1"}, "SKU-1"),
        ({"article_code": "A-1", "external_reference": "X-1"}, "A-1"),
        ({"sku": "", "external_reference": "X-1"}, "X-1"),
    ])
    def test_stock_keys_on_sku_first(self, body, expected):
        data = {"group": "stock", "action": "updated", "entityId": 42, "body": body}
        assert InboundEnvelope.from_webhook(data, {"X-Webhook-Id": "abc-4"}).entity_key == expected

    def test_order_ignores_sku(self):
        data = {"group": "order", "action": "updated", "entityId": 9, "body": {"sku": "SKU-1"}}
        assert InboundEnvelope.from_webhook(data, {"X-Webhook-Id": "abc-5"}).entity_key == "9"

    def test_body_webhook_id_fallback(self):
        data = {"webhook_id": "body-id", "group": "stock", "action": "updated", "entityId": "1"}
        assert InboundEnvelope.from_webhook(data, {}).delivery_id == "body-id"
        assert InboundEnvelope.from_webhook(data, {"X-Webhook-Id": "  "}).delivery_id == "body-id"

    def test_topic_header_used_when_group_missing(self):
        data = {"entityId": "S-1", "body": {}}
        envelope = InboundEnvelope.from_webhook(
            data, {"X-Webhook-Id": "abc-3", "X-Webhook-Topic": "shipment.created"})
        assert envelope.event_type == SHIPMENT_CREATED

    @pytest.mark.parametrize("data, headers", [
        ([], {"X-Webhook-Id": "x"}),
        ({"group": "order", "action": "created", "entityId": "1"}, {}),
        ({"entityId": "1"}, {"X-Webhook-Id": "x"}),
        ({"group": "order", "action": "created", "body": {}}, {"X-Webhook-Id": "x"}),
        ({"group": "order", "action": "created", "entityId": "1", "body": "oops"}, {"X-Webhook-Id": "x"}),
        ({"group": "stock", "action": "updated", "entityId": "1"}, {"X-Webhook-Id": "   "}),
        ({"webhook_id": " ", "group": "stock", "action": "updated", "entityId": "1"}, {}),
    ])
    def test_missing_parts_are_malformed(self, data, headers):
        with pytest.raises(MalformedEventError):
            InboundEnvelope.from_webhook(data, headers)
