from flask_sqlalchemy import SQLAlchemy
from enum import Enum

from wms_sync.datetime_utils import utcnow, format_datetime_iso

db = SQLAlchemy()


class EventStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEFERRED = "deferred"
    FAILED = "failed"


class EventSource(Enum):
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"


class ExportStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportAction(Enum):
    EXPORT = "export"
    CANCEL = "cancel"


class WebhookEvent(db.Model):
    """One inbound WMS notification and its processing state."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    group_name = db.Column(db.String(32), nullable=False)
    action = db.Column(db.String(64), nullable=False)
    entity_key = db.Column(db.String(255), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    priority = db.Column(db.Integer, nullable=False, default=999)
    status = db.Column(db.Enum(EventStatus), nullable=False, default=EventStatus.PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True)  # NULL = ready now
    error_message = db.Column(db.Text, nullable=True)
    source = db.Column(db.Enum(EventSource), nullable=False, default=EventSource.WEBHOOK)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("idx_webhook_events_selection", "status", "priority", "created_at"),
        db.Index("idx_webhook_events_prerequisite", "entity_key", "group_name", "action", "status"),
    )

    @property
    def event_type(self):
        from wms_sync.events.types import EventType
        return EventType.parse(self.group_name, self.action)

    @property
    def topic(self):
        return f"{self.group_name}.{self.action}"

    def __repr__(self):
        return f"<WebhookEvent {self.id} {self.topic} {self.entity_key} - {self.status}>"

    def to_dict(self, include_payload=False):
        data = {
            'id': self.id,
            'delivery_id': self.delivery_id,
            'type': self.topic,
            'entity_key': self.entity_key,
            'priority': self.priority,
            'status': self.status.value if self.status else None,
            'attempts': self.attempts,
            'next_attempt_at': format_datetime_iso(self.next_attempt_at),
            'error_message': self.error_message,
            'source': self.source.value if self.source else None,
            'created_at': format_datetime_iso(self.created_at),
            'updated_at': format_datetime_iso(self.updated_at),
            'processed_at': format_datetime_iso(self.processed_at),
        }
        if include_payload:
            data['payload'] = self.payload
        return data


class DeliveryReceipt(db.Model):
    """Delivery ids already admitted. Kept longer than completed events."""
    __tablename__ = "delivery_receipts"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    received_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<DeliveryReceipt {self.delivery_id}>"


class EntityMilestone(db.Model):
    """
    First completion of a prerequisite event type for an entity.

    Not purged with completed events, so dependents of a long-lived order or
    shipment still resolve after the created event row is gone.
    """
    __tablename__ = "entity_milestones"

    id = db.Column(db.Integer, primary_key=True)
    entity_key = db.Column(db.String(255), nullable=False)
    group_name = db.Column(db.String(32), nullable=False)
    action = db.Column(db.String(64), nullable=False)
    completed_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("entity_key", "group_name", "action", name="uq_entity_milestone"),
    )

    def __repr__(self):
        return f"<EntityMilestone {self.group_name}.{self.action} {self.entity_key}>"


class OrderExportItem(db.Model):
    """Outbound order export/cancel request waiting to be sent to the WMS."""
    __tablename__ = "order_export_queue"

    id = db.Column(db.Integer, primary_key=True)
    order_reference = db.Column(db.String(255), nullable=False, index=True)
    action = db.Column(db.Enum(ExportAction), nullable=False, default=ExportAction.EXPORT)
    payload = db.Column(db.JSON, nullable=True)
    status = db.Column(db.Enum(ExportStatus), nullable=False, default=ExportStatus.PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    wms_order_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("idx_order_export_selection", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<OrderExportItem {self.id} {self.order_reference} {self.action} - {self.status}>"

    def to_dict(self):
        return {
            'id': self.id,
            'order_reference': self.order_reference,
            'action': self.action.value if self.action else None,
            'status': self.status.value if self.status else None,
            'attempts': self.attempts,
            'next_attempt_at': format_datetime_iso(self.next_attempt_at),
            'error_message': self.error_message,
            'wms_order_id': self.wms_order_id,
            'created_at': format_datetime_iso(self.created_at),
            'updated_at': format_datetime_iso(self.updated_at),
            'completed_at': format_datetime_iso(self.completed_at),
        }


class ReconciliationCursor(db.Model):
    """Last successful reconciliation window per category."""
    __tablename__ = "reconciliation_cursors"

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(32), unique=True, nullable=False)
    last_run_at = db.Column(db.DateTime, nullable=True)
    last_item_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    def __repr__(self):
        return f"<ReconciliationCursor {self.category} {self.last_run_at}>"


# ------------------------------------------------------------------
# Local storefront state written by the default handlers
# ------------------------------------------------------------------

class StorefrontOrder(db.Model):
    __tablename__ = "storefront_orders"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(255), unique=True, nullable=False, index=True)
    wms_order_id = db.Column(db.String(255), nullable=True)
    wms_status = db.Column(db.String(64), nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    last_payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<StorefrontOrder {self.reference} - {self.wms_status}>"


class StockLevel(db.Model):
    __tablename__ = "stock_levels"

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(255), unique=True, nullable=False, index=True)
    stock_physical = db.Column(db.Integer, nullable=False, default=0)
    stock_status = db.Column(db.String(32), nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<StockLevel {self.sku} {self.stock_physical}>"


class Shipment(db.Model):
    __tablename__ = "shipments"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(255), unique=True, nullable=False, index=True)
    order_reference = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(db.String(64), nullable=True)
    tracking_code = db.Column(db.String(255), nullable=True)
    tracking_url = db.Column(db.Text, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Shipment {self.reference} - {self.status}>"


class InboundReceipt(db.Model):
    __tablename__ = "inbound_receipts"

    id = db.Column(db.Integer, primary_key=True)
    wms_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    reference = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(64), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<InboundReceipt {self.wms_id} - {self.status}>"
