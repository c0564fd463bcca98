from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from sqlalchemy import func, or_

from wms_sync.datetime_utils import utcnow
from wms_sync.logging_config import get_logger, QueueRunContext
from wms_sync.models import db, OrderExportItem, ExportStatus, ExportAction
from wms_sync.services.retry_policy import format_error

logger = get_logger(__name__)


class OrderExporter(Protocol):
    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def cancel_order(self, order_id: str) -> Any:
        ...


class OrderExportQueue:
    """
    Outbound queue for sending storefront orders to the WMS.

    At most one pending/processing item exists per (order, action).
    Failed sends back off 2^attempts minutes and give up after max_attempts.
    """

    def __init__(self, exporter_factory: Callable[[], OrderExporter], max_attempts: int = 5):
        self.exporter_factory = exporter_factory
        self.max_attempts = max_attempts

    @staticmethod
    def enqueue(order_reference: str, action: ExportAction = ExportAction.EXPORT,
                payload: Optional[dict] = None, now: Optional[datetime] = None) -> Tuple[OrderExportItem, bool]:
        """
        Queue an export or cancel request.

        Returns:
            (item, created) - created is False when an open item already existed
        """
        if not order_reference:
            raise ValueError("order_reference is required")

        existing = OrderExportItem.query.filter(
            OrderExportItem.order_reference == str(order_reference),
            OrderExportItem.action == action,
            OrderExportItem.status.in_([ExportStatus.PENDING, ExportStatus.PROCESSING]),
        ).first()
        if existing:
            logger.debug("Order export already queued", order_reference=order_reference, item_id=existing.id)
            return existing, False

        now = now or utcnow()
        item = OrderExportItem(
            order_reference=str(order_reference),
            action=action,
            payload=payload or {},
            status=ExportStatus.PENDING,
            attempts=0,
            next_attempt_at=None,
            created_at=now,
            updated_at=now,
        )
        db.session.add(item)
        db.session.commit()

        logger.info("Order export queued", item_id=item.id, order_reference=order_reference, action=action.value)
        return item, True

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(minutes=2 ** attempts)

    def process_pending(self, limit: int = 10, now: Optional[datetime] = None) -> Dict[str, int]:
        """Send due items, oldest first. Returns counts per outcome."""
        now = now or utcnow()
        counts = {"processed": 0, "completed": 0, "retried": 0, "failed": 0}

        items = OrderExportItem.query.filter(
            OrderExportItem.status == ExportStatus.PENDING,
            or_(OrderExportItem.next_attempt_at.is_(None), OrderExportItem.next_attempt_at <= now),
        ).order_by(OrderExportItem.created_at.asc(), OrderExportItem.id.asc()).limit(limit).all()

        if not items:
            return counts

        with QueueRunContext("order_export"):
            exporter = self.exporter_factory()
            for item in items:
                outcome = self.process_item(item, exporter, now)
                if outcome is None:
                    continue
                counts["processed"] += 1
                counts[outcome] += 1

        logger.info("Order export pass finished", **counts)
        return counts

    def process_item(self, item: OrderExportItem, exporter: OrderExporter,
                     now: Optional[datetime] = None) -> Optional[str]:
        """Send one item. Returns 'completed', 'retried', 'failed' or None if it was not pending."""
        now = now or utcnow()
        item_id = item.id

        claimed = OrderExportItem.query.filter(
            OrderExportItem.id == item_id,
            OrderExportItem.status == ExportStatus.PENDING,
        ).update({
            OrderExportItem.status: ExportStatus.PROCESSING,
            OrderExportItem.attempts: OrderExportItem.attempts + 1,
            OrderExportItem.updated_at: now,
        }, synchronize_session=False)
        db.session.commit()
        if not claimed:
            return None

        try:
            if item.action == ExportAction.CANCEL:
                wms_order_id = (item.payload or {}).get("wms_order_id") or item.order_reference
                exporter.cancel_order(str(wms_order_id))
            else:
                response = exporter.create_order(item.payload or {}) or {}
                wms_order_id = response.get("id") if isinstance(response, dict) else None
        except Exception as e:
            return self._handle_failure(item, e, now)

        item.status = ExportStatus.COMPLETED
        item.completed_at = now
        item.updated_at = now
        item.error_message = None
        item.wms_order_id = str(wms_order_id) if wms_order_id is not None else None
        db.session.commit()
        logger.info("Order export sent", item_id=item_id, order_reference=item.order_reference,
                    action=item.action.value, wms_order_id=item.wms_order_id)
        return "completed"

    def _handle_failure(self, item: OrderExportItem, error, now: datetime) -> str:
        item.error_message = format_error(error)
        item.updated_at = now

        if item.attempts < self.max_attempts:
            item.status = ExportStatus.PENDING
            item.next_attempt_at = now + self.backoff(item.attempts)
            db.session.commit()
            logger.warning(
                f"Order export {item.id} will retry ({item.attempts}/{self.max_attempts})",
                order_reference=item.order_reference,
                error=item.error_message[:100],
            )
            return "retried"

        item.status = ExportStatus.FAILED
        item.next_attempt_at = None
        db.session.commit()
        logger.error(
            f"Order export {item.id} failed after {item.attempts} attempts",
            order_reference=item.order_reference,
            error=item.error_message[:100],
        )
        return "failed"

    @staticmethod
    def get_stats() -> Dict[str, int]:
        rows = db.session.query(
            OrderExportItem.status, func.count(OrderExportItem.id)
        ).group_by(OrderExportItem.status).all()
        stats = {status.value: 0 for status in ExportStatus}
        for status, count in rows:
            stats[status.value] = count
        stats["total"] = sum(stats[status.value] for status in ExportStatus)
        return stats

    @staticmethod
    def retry_failed(ids: Optional[Iterable[int]] = None, now: Optional[datetime] = None) -> int:
        query = OrderExportItem.query.filter(OrderExportItem.status == ExportStatus.FAILED)
        if ids is not None:
            ids = [int(i) for i in ids]
            if not ids:
                return 0
            query = query.filter(OrderExportItem.id.in_(ids))
        count = query.update({
            OrderExportItem.status: ExportStatus.PENDING,
            OrderExportItem.attempts: 0,
            OrderExportItem.next_attempt_at: None,
            OrderExportItem.error_message: None,
            OrderExportItem.updated_at: now or utcnow(),
        }, synchronize_session=False)
        db.session.commit()
        logger.info("Failed order exports reset for retry", count=count)
        return count

    @staticmethod
    def purge(status: ExportStatus, cutoff: datetime) -> int:
        count = OrderExportItem.query.filter(
            OrderExportItem.status == status,
            OrderExportItem.updated_at < cutoff,
        ).delete(synchronize_session=False)
        db.session.commit()
        return count
