"""
Tests for the WMS webhook endpoint (signature check, parsing, dedup, immediate dispatch).
"""
import json
from unittest.mock import patch

import pytest

from wms_sync.models import DeliveryReceipt, EventStatus, StorefrontOrder, WebhookEvent
from wms_sync.services.ingestion import IngestionService
from wms_sync.webhooks.verification import compute_signature, verify_signature, SIGNATURE_HEADER

SECRET = "test-webhook-secret"


@pytest.fixture
def post_webhook(client):
    """POST a signed notification; pass signature=... to override it."""
    def _post(data, delivery_id="delivery-1", signature=None, raw=None):
        body = raw if raw is not None else json.dumps(data).encode("utf-8")
        headers = {SIGNATURE_HEADER: signature if signature is not None else compute_signature(body, SECRET)}
        if delivery_id:
            headers["X-Webhook-Id"] = delivery_id
        return client.post("/webhooks/wms", data=body, headers=headers, content_type="application/json")
    return _post


def order_created(reference="O-1", entity_id=9001):
    return {"group": "order", "action": "created", "entityId": entity_id,
            "body": {"external_reference": reference, "status": "created"}}


# ==============================================================================
# Signature verification
# ==============================================================================

class TestSignatureVerification:

    def test_matching_signature(self):
        body = b'{"group": "stock"}'
        assert verify_signature(body, compute_signature(body, "s3cret"), "s3cret") is True

    def test_tampered_body_rejected(self):
        signature = compute_signature(b'{"a": 1}', "s3cret")
        assert verify_signature(b'{"a": 2}', signature, "s3cret") is False

    @pytest.mark.parametrize("signature, secret", [(None, "s3cret"), ("", "s3cret"), ("abc", None), ("abc", "")])
    def test_fails_closed(self, signature, secret):
        assert verify_signature(b"{}", signature, secret) is False


# ==============================================================================
# Endpoint
# ==============================================================================

class TestWmsWebhook:

    def test_head_probe(self, client):
        assert client.head("/webhooks/wms").status_code == 200

    def test_valid_notification_queued_and_processed(self, app, post_webhook):
        response = post_webhook(order_created())

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "queued"
        assert data["dispatch"]["outcome"] == "completed"
        event = WebhookEvent.query.one()
        assert event.id == data["event_id"]
        assert event.entity_key == "O-1"
        assert event.status == EventStatus.COMPLETED
        assert StorefrontOrder.query.filter_by(reference="O-1").one().wms_order_id == "9001"

    def test_duplicate_delivery_acknowledged_once(self, app, post_webhook):
        with patch("wms_sync.services.deduplicator.logger") as mock_logger:
            first = post_webhook(order_created(), delivery_id="abc")
            second = post_webhook(order_created(), delivery_id="abc")

        assert first.get_json()["status"] == "queued"
        assert second.status_code == 200
        assert second.get_json()["status"] == "duplicate"
        assert WebhookEvent.query.count() == 1
        assert mock_logger.debug.call_count == 1

    def test_invalid_signature_rejected(self, app, post_webhook):
        response = post_webhook(order_created(), signature="bm90LXRoZS1zaWduYXR1cmU=")

        assert response.status_code == 401
        assert response.get_json() == {"error": "Invalid signature"}
        assert WebhookEvent.query.count() == 0
        assert DeliveryReceipt.query.count() == 0

    def test_missing_signature_rejected(self, app, client):
        response = client.post("/webhooks/wms", json=order_created(), headers={"X-Webhook-Id": "x"})
        assert response.status_code == 401

    def test_no_secret_configured_rejects_everything(self, app, post_webhook):
        app.config["WMS_WEBHOOK_SECRET"] = None
        assert post_webhook(order_created()).status_code == 401

    def test_invalid_json(self, app, post_webhook):
        response = post_webhook(None, raw=b"{not json")
        assert response.status_code == 400
        assert "Invalid JSON" in response.get_json()["error"]

    def test_missing_delivery_id(self, app, post_webhook):
        response = post_webhook(order_created(), delivery_id=None)
        assert response.status_code == 400
        assert WebhookEvent.query.count() == 0

    def test_blank_delivery_id_rejected(self, app, post_webhook):
        data = {"group": "stock", "action": "updated", "entityId": "SKU-1", "body": {"stock_physical": 1}}

        response = post_webhook(data, delivery_id="   ")

        assert response.status_code == 400
        assert WebhookEvent.query.count() == 0
        assert DeliveryReceipt.query.count() == 0

    def test_unknown_group(self, app, post_webhook):
        data = {"group": "invoice", "action": "created", "entityId": 1, "body": {}}
        assert post_webhook(data).status_code == 400

    def test_deferred_dependent(self, app, post_webhook):
        data = {"group": "order", "action": "updated", "entityId": 9001,
                "body": {"external_reference": "O-1", "status": "planned"}}

        response = post_webhook(data)

        assert response.status_code == 200
        assert response.get_json()["dispatch"]["outcome"] == "skipped"
        assert WebhookEvent.query.one().status == EventStatus.DEFERRED

    def test_automation_disabled_still_stores(self, app, post_webhook):
        app.config["INITIAL_SYNC_COMPLETED"] = False

        response = post_webhook(order_created())

        assert response.get_json() == {"status": "queued", "event_id": 1, "dispatch": None}
        assert WebhookEvent.query.one().status == EventStatus.PENDING

    def test_storage_error_returns_500(self, app, post_webhook):
        with patch.object(IngestionService, "ingest", side_effect=RuntimeError("db down")):
            response = post_webhook(order_created())

        assert response.status_code == 500
        assert response.get_json() == {"error": "Failed to store event"}
