"""
Default handlers that mirror WMS state into the local storefront tables.

Handlers receive the stored notification (``{group, action, entityId,
body, ...}``) and a HandlerContext. They only add/modify rows; the
dispatcher owns the transaction. Article and variant events are not
handled here because product field mapping lives in the catalogue
integration, which registers its own handlers.
"""
from wms_sync.datetime_utils import utcnow, parse_datetime
from wms_sync.events.errors import PermanentHandlerError
from wms_sync.events.registry import HandlerRegistry
from wms_sync.events import types as t
from wms_sync.logging_config import get_logger
from wms_sync.models import db, StorefrontOrder, StockLevel, Shipment, InboundReceipt

logger = get_logger(__name__)


def _body(payload):
    body = (payload or {}).get("body") or {}
    if not isinstance(body, dict):
        raise PermanentHandlerError("Event body is not an object")
    return body


def _get_or_create(model, **lookup):
    instance = model.query.filter_by(**lookup).first()
    if instance is None:
        instance = model(**lookup)
        db.session.add(instance)
    return instance


# ==============================================================================
# Orders
# ==============================================================================

def order_exists(reference: str) -> bool:
    """Existence probe for the order.created prerequisite."""
    return db.session.query(
        StorefrontOrder.query.filter_by(reference=reference).exists()
    ).scalar()


def handle_order_event(payload, context):
    body = _body(payload)
    order = _get_or_create(StorefrontOrder, reference=context.entity_key)

    if payload.get("entityId") is not None:
        order.wms_order_id = str(payload["entityId"])
    order.wms_status = body.get("status") or context.event_type.action
    order.last_payload = body

    if context.event_type == t.ORDER_SHIPPED:
        order.shipped_at = parse_datetime(body.get("shipped_at")) or utcnow()

    db.session.flush()
    logger.debug("Order state applied", reference=order.reference, wms_status=order.wms_status)


# ==============================================================================
# Stock
# ==============================================================================

def handle_stock_event(payload, context):
    body = _body(payload)
    sku = body.get("sku") or body.get("article_code") or context.entity_key

    raw_quantity = body.get("stock_physical")
    if raw_quantity is None:
        raise PermanentHandlerError(f"Stock event for {sku} has no stock_physical")
    try:
        quantity = int(raw_quantity)
    except (TypeError, ValueError):
        raise PermanentHandlerError(f"Invalid stock_physical for {sku}: {raw_quantity!r}")

    level = _get_or_create(StockLevel, sku=str(sku))
    level.stock_physical = quantity
    level.stock_status = body.get("stock_status") or ("instock" if quantity > 0 else "outofstock")
    db.session.flush()
    logger.debug("Stock level applied", sku=level.sku, stock_physical=quantity)


# ==============================================================================
# Shipments
# ==============================================================================

def handle_shipment_event(payload, context):
    body = _body(payload)
    shipment = _get_or_create(Shipment, reference=context.entity_key)

    shipment.order_reference = body.get("order_reference") or shipment.order_reference
    shipment.tracking_code = body.get("tracking_code") or shipment.tracking_code
    shipment.tracking_url = body.get("tracking_url") or shipment.tracking_url
    shipment.status = body.get("status") or context.event_type.action

    if context.event_type == t.SHIPMENT_SHIPPED:
        shipment.shipped_at = parse_datetime(body.get("shipped_at")) or utcnow()
    elif context.event_type == t.SHIPMENT_DELIVERED:
        shipment.delivered_at = parse_datetime(body.get("delivered_at")) or utcnow()

    db.session.flush()


# ==============================================================================
# Inbounds
# ==============================================================================

def handle_inbound_event(payload, context):
    body = _body(payload)
    wms_id = body.get("id") or payload.get("entityId")
    if wms_id in (None, ""):
        raise PermanentHandlerError("Inbound event has no id")

    inbound = _get_or_create(InboundReceipt, wms_id=str(wms_id))
    inbound.reference = body.get("reference") or inbound.reference
    inbound.status = body.get("status") or context.event_type.action
    if context.event_type == t.INBOUND_COMPLETED:
        inbound.completed_at = parse_datetime(body.get("completed_at")) or utcnow()
    db.session.flush()


def build_default_registry() -> HandlerRegistry:
    """Registry with the storefront handlers for order, stock, shipment and inbound events."""
    registry = HandlerRegistry()
    for event_type in (t.ORDER_CREATED, t.ORDER_UPDATED, t.ORDER_PLANNED, t.ORDER_PROCESSING, t.ORDER_SHIPPED):
        registry.register(event_type, handle_order_event)
    for event_type in (t.STOCK_UPDATED, t.STOCK_ADJUSTMENT):
        registry.register(event_type, handle_stock_event)
    for event_type in (t.SHIPMENT_CREATED, t.SHIPMENT_UPDATED, t.SHIPMENT_SHIPPED, t.SHIPMENT_DELIVERED):
        registry.register(event_type, handle_shipment_event)
    for event_type in (t.INBOUND_CREATED, t.INBOUND_UPDATED, t.INBOUND_COMPLETED):
        registry.register(event_type, handle_inbound_event)
    return registry
