"""
Tests for the outbound order export queue.
"""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from wms_sync.models import db, ExportAction, ExportStatus, OrderExportItem
from wms_sync.services.order_export import OrderExportQueue
from wms_sync.wms.api import WMSAPIError

NOW = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture
def exporter():
    exporter = Mock()
    exporter.create_order.return_value = {"id": 77}
    exporter.cancel_order.return_value = {}
    return exporter


@pytest.fixture
def queue(exporter):
    return OrderExportQueue(lambda: exporter, max_attempts=5)


class TestEnqueue:

    def test_open_item_reused(self, app):
        item, created = OrderExportQueue.enqueue("ORD-1", ExportAction.EXPORT, {"lines": []}, now=NOW)
        again, created_again = OrderExportQueue.enqueue("ORD-1", ExportAction.EXPORT, now=NOW)

        assert created is True
        assert created_again is False
        assert again.id == item.id
        assert OrderExportItem.query.count() == 1

    def test_cancel_is_separate_from_export(self, app):
        OrderExportQueue.enqueue("ORD-1", ExportAction.EXPORT, now=NOW)
        _, created = OrderExportQueue.enqueue("ORD-1", ExportAction.CANCEL, now=NOW)
        assert created is True

    def test_reference_required(self, app):
        with pytest.raises(ValueError):
            OrderExportQueue.enqueue("", ExportAction.EXPORT)


class TestProcessPending:

    def test_export_sent_and_completed(self, app, queue, exporter):
        item, _ = OrderExportQueue.enqueue("ORD-1", ExportAction.EXPORT, {"reference": "ORD-1"}, now=NOW)

        counts = queue.process_pending(now=NOW)

        assert counts == {"processed": 1, "completed": 1, "retried": 0, "failed": 0}
        exporter.create_order.assert_called_once_with({"reference": "ORD-1"})
        item = db.session.get(OrderExportItem, item.id)
        assert item.status == ExportStatus.COMPLETED
        assert item.wms_order_id == "77"
        assert item.attempts == 1

    def test_cancel_uses_wms_order_id(self, app, queue, exporter):
        OrderExportQueue.enqueue("ORD-1", ExportAction.CANCEL, {"wms_order_id": "9001"}, now=NOW)

        queue.process_pending(now=NOW)

        exporter.cancel_order.assert_called_once_with("9001")

    def test_failure_backs_off_exponentially(self, app, queue, exporter):
        exporter.create_order.side_effect = WMSAPIError("502 from WMS", 502)
        item, _ = OrderExportQueue.enqueue("ORD-1", now=NOW)

        assert queue.process_pending(now=NOW)["retried"] == 1
        item = db.session.get(OrderExportItem, item.id)
        assert item.status == ExportStatus.PENDING
        assert item.next_attempt_at == NOW + timedelta(minutes=2)
        assert "502 from WMS" in item.error_message

        # Not due yet
        assert queue.process_pending(now=NOW + timedelta(minutes=1))["processed"] == 0

        t1 = NOW + timedelta(minutes=2)
        queue.process_pending(now=t1)
        assert db.session.get(OrderExportItem, item.id).next_attempt_at == t1 + timedelta(minutes=4)

    def test_gives_up_after_max_attempts(self, app, exporter):
        exporter.create_order.side_effect = WMSAPIError("down")
        queue = OrderExportQueue(lambda: exporter, max_attempts=2)
        item, _ = OrderExportQueue.enqueue("ORD-1", now=NOW)

        queue.process_pending(now=NOW)
        counts = queue.process_pending(now=NOW + timedelta(hours=1))

        assert counts["failed"] == 1
        item = db.session.get(OrderExportItem, item.id)
        assert item.status == ExportStatus.FAILED
        assert item.attempts == 2

        assert OrderExportQueue.retry_failed([item.id]) == 1
        assert OrderExportQueue.get_stats()["pending"] == 1

    def test_backoff_doubles(self, queue):
        assert [queue.backoff(n) for n in (1, 2, 3)] == [
            timedelta(minutes=2), timedelta(minutes=4), timedelta(minutes=8)]

    def test_empty_queue_does_not_build_exporter(self, app):
        factory = Mock()
        assert OrderExportQueue(factory).process_pending(now=NOW)["processed"] == 0
        factory.assert_not_called()
