import json

from flask import current_app, jsonify, request

from wms_sync.events.envelope import InboundEnvelope
from wms_sync.events.errors import MalformedEventError
from wms_sync.logging_config import get_logger
from wms_sync.models import db
from wms_sync.runtime import get_runtime, processing_options
from wms_sync.webhooks import webhooks_bp
from wms_sync.webhooks.verification import verify_signature, SIGNATURE_HEADER

logger = get_logger(__name__)


@webhooks_bp.route("/wms", methods=["HEAD", "POST"])
def wms_webhook():
    """
    Receive a WMS notification.

    401 bad/missing signature, 400 malformed, 200 {"status": "duplicate"}
    for a delivery id seen before, 200 {"status": "queued", ...} otherwise
    (with the outcome of the immediate processing attempt).
    """
    if request.method == "HEAD":
        return "", 200

    raw_body = request.get_data(cache=True)
    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), current_app.config.get("WMS_WEBHOOK_SECRET")):
        logger.warning(
            "Rejected WMS webhook with invalid signature",
            remote_addr=request.remote_addr,
            topic=request.headers.get("X-Webhook-Topic"),
        )
        return jsonify({"error": "Invalid signature"}), 401

    try:
        data = json.loads(raw_body or b"")
        envelope = InboundEnvelope.from_webhook(data, request.headers)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        logger.warning("Rejected malformed WMS webhook", error=str(e))
        return jsonify({"error": f"Invalid JSON: {e}"}), 400
    except MalformedEventError as e:
        logger.warning("Rejected malformed WMS webhook", error=str(e))
        return jsonify({"error": str(e)}), 400

    try:
        result = get_runtime().ingestion.ingest(envelope, processing_options())
    except Exception as e:
        db.session.rollback()
        logger.error("Error storing WMS webhook", delivery_id=envelope.delivery_id, error=str(e), exc_info=True)
        return jsonify({"error": "Failed to store event"}), 500

    return jsonify(result.to_dict()), 200
