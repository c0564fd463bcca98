from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from wms_sync.events.errors import MalformedEventError
from wms_sync.events.types import EventGroup, EventType

DELIVERY_ID_HEADER = "X-Webhook-Id"
TOPIC_HEADER = "X-Webhook-Topic"

# Body fields naming the entity, tried in order before entityId
STOCK_KEY_FIELDS = ("sku", "article_code", "external_reference")
ENTITY_KEY_FIELDS = {EventGroup.STOCK: STOCK_KEY_FIELDS}
DEFAULT_KEY_FIELDS = ("external_reference",)


@dataclass(frozen=True)
class InboundEnvelope:
    """A notification that passed parsing and is ready for admission."""
    delivery_id: str
    event_type: EventType
    entity_key: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_webhook(cls, data: Any, headers: Optional[Mapping[str, str]] = None) -> "InboundEnvelope":
        """
        Build an envelope from a decoded WMS webhook body.

        The WMS posts ``{group, action, entityId, entity, customer, body}``.
        The delivery id comes from the ``X-Webhook-Id`` header, falling back
        to a ``webhook_id`` field. When group/action are absent the
        ``X-Webhook-Topic`` header (``group.action``) is used. The entity key
        is ``body.external_reference`` when present, else ``entityId``. Stock
        events key on ``body.sku``/``body.article_code`` first so they match
        the SKU that reconciliation and the stock handler use.

        Raises:
            MalformedEventError: if any required part is missing
        """
        headers = headers or {}
        if not isinstance(data, dict):
            raise MalformedEventError("Webhook body must be a JSON object")

        delivery_id = (headers.get(DELIVERY_ID_HEADER) or "").strip()
        if not delivery_id:
            delivery_id = str(data.get("webhook_id") or "").strip()
        if not delivery_id:
            raise MalformedEventError("Missing delivery id")

        if data.get("group") or data.get("action"):
            event_type = EventType.parse(data.get("group"), data.get("action"))
        elif headers.get(TOPIC_HEADER):
            event_type = EventType.from_topic(headers.get(TOPIC_HEADER))
        else:
            raise MalformedEventError("Missing event group/action")

        body = data.get("body") or {}
        if not isinstance(body, dict):
            raise MalformedEventError("Webhook 'body' must be an object")

        key_fields = ENTITY_KEY_FIELDS.get(event_type.group, DEFAULT_KEY_FIELDS)
        entity_key = next((body[f] for f in key_fields if body.get(f) not in (None, "")), None)
        if entity_key is None:
            entity_key = data.get("entityId")
        if entity_key in (None, ""):
            raise MalformedEventError(f"Missing entity key (body.{'/'.join(key_fields)} or entityId)")

        return cls(
            delivery_id=delivery_id,
            event_type=event_type,
            entity_key=str(entity_key),
            payload=data,
        )
