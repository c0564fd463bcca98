"""
Tests for delivery-id deduplication.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

from wms_sync.models import db, DeliveryReceipt
from wms_sync.services.deduplicator import Deduplicator


class TestDeduplicator:

    def test_first_delivery_admitted(self, app):
        assert Deduplicator.admit("delivery-1") is True
        db.session.commit()

        assert Deduplicator.seen("delivery-1") is True
        assert DeliveryReceipt.query.count() == 1

    def test_repeat_delivery_rejected(self, app):
        assert Deduplicator.admit("delivery-1") is True
        db.session.commit()

        assert Deduplicator.admit("delivery-1") is False
        db.session.rollback()
        assert DeliveryReceipt.query.count() == 1

    def test_receipt_discarded_with_caller_rollback(self, app):
        """The receipt is part of the caller's transaction, not committed on its own."""
        assert Deduplicator.admit("delivery-2") is True
        db.session.rollback()

        assert Deduplicator.seen("delivery-2") is False
        assert Deduplicator.admit("delivery-2") is True

    def test_distinct_ids_both_admitted(self, app):
        assert Deduplicator.admit("a") is True
        assert Deduplicator.admit("b") is True
        db.session.commit()
        assert DeliveryReceipt.query.count() == 2

    def test_purge_removes_old_receipts_only(self, app):
        now = datetime(2025, 3, 1, 12, 0, 0)
        Deduplicator.admit("old", now=now - timedelta(days=31))
        Deduplicator.admit("recent", now=now - timedelta(days=1))
        db.session.commit()

        assert Deduplicator.purge(now - timedelta(days=30)) == 1
        assert Deduplicator.seen("old") is False
        assert Deduplicator.seen("recent") is True

    def test_concurrent_insert_loses_on_unique_index(self, app):
        assert Deduplicator.admit("delivery-1") is True
        db.session.commit()

        # Another worker admitted the id between the lookup and the insert
        with patch.object(Deduplicator, "seen", return_value=False):
            assert Deduplicator.admit("delivery-1") is False
        db.session.rollback()

        assert DeliveryReceipt.query.count() == 1
