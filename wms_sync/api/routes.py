"""
Operational API for the webhook queue and the order export queue.
"""
import hmac
from functools import wraps

from flask import current_app, jsonify, request

from wms_sync.api import api_bp
from wms_sync.logging_config import get_logger
from wms_sync.models import db, ExportAction
from wms_sync.runtime import get_runtime, processing_options
from wms_sync.services.event_store import EventStore
from wms_sync.services.order_export import OrderExportQueue
from wms_sync.services.reconciliation import ReconciliationCategory

logger = get_logger(__name__)


def require_admin_token(fn):
    """Check X-Admin-Token when ADMIN_API_TOKEN is configured."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if expected and not hmac.compare_digest(request.headers.get("X-Admin-Token", ""), expected):
            return jsonify({"error": "Unauthorized"}), 401
        return fn(*args, **kwargs)
    return wrapper


def _requested_ids():
    data = request.get_json(silent=True) or {}
    ids = data.get("ids")
    if ids is None:
        return None
    if not isinstance(ids, list):
        raise ValueError("'ids' must be a list of event ids")
    return [int(i) for i in ids]


# ==============================================================================
# Webhook queue
# ==============================================================================

@api_bp.route("/queue/stats", methods=["GET"])
@require_admin_token
def queue_stats():
    try:
        return jsonify(EventStore.get_stats()), 200
    except Exception as e:
        logger.error("Error in /api/queue/stats", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/recent", methods=["GET"])
@require_admin_token
def queue_recent():
    """Most recently updated events. ?limit= (default 50, max 500)"""
    try:
        limit = request.args.get("limit", 50, type=int)
        events = EventStore.get_recent_activity(limit)
        return jsonify({
            "events": [event.to_dict() for event in events],
            "count": len(events),
        }), 200
    except Exception as e:
        logger.error("Error in /api/queue/recent", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/health", methods=["GET"])
@require_admin_token
def queue_health():
    try:
        health = get_runtime().maintenance.get_health()
        return jsonify(health), 200 if health["status"] == "healthy" else 503
    except Exception as e:
        logger.error("Error in /api/queue/health", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/retry-failed", methods=["POST"])
@require_admin_token
def queue_retry_failed():
    """Reset failed events (all, or the given {"ids": [...]}) to pending with attempts = 0."""
    try:
        ids = _requested_ids()
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    try:
        count = EventStore.retry_failed(ids)
        return jsonify({"reset": count}), 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/queue/retry-failed", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/process", methods=["POST"])
@require_admin_token
def queue_process():
    """Run one periodic queue pass now."""
    try:
        summary = get_runtime().runner.process_batch(processing_options())
        return jsonify(summary.to_dict()), 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/queue/process", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/events/<int:event_id>", methods=["GET"])
@require_admin_token
def queue_event(event_id):
    event = EventStore.get(event_id)
    if event is None:
        return jsonify({'error': f"Event {event_id} not found"}), 404
    return jsonify(event.to_dict(include_payload=True)), 200


@api_bp.route("/queue/events/<int:event_id>/force", methods=["POST"])
@require_admin_token
def queue_force_process(event_id):
    """Requeue one event (attempts reset) and dispatch it immediately."""
    try:
        event = EventStore.get(event_id)
        if event is None:
            return jsonify({'error': f"Event {event_id} not found"}), 404

        if not EventStore.requeue(event_id):
            return jsonify({
                'error': f"Event {event_id} cannot be forced from status {event.status.value}"
            }), 409

        runtime = get_runtime()
        options = processing_options()
        result = runtime.runner.process_immediately(event_id, options)
        logger.info("Event force processed", event_id=event_id,
                    outcome=result.outcome.value if result else None)
        return jsonify({
            "event": EventStore.get(event_id).to_dict(),
            "dispatch": result.to_dict() if result else None,
        }), 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/queue/events/force", event_id=event_id, error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/queue/reconcile/<category>", methods=["POST"])
@require_admin_token
def queue_reconcile(category):
    try:
        category = ReconciliationCategory(category)
    except ValueError:
        valid = [c.value for c in ReconciliationCategory]
        return jsonify({'error': f"Unknown category '{category}', expected one of {valid}"}), 400

    try:
        summary = get_runtime().reconciliation.run(category, processing_options())
        return jsonify(summary.to_dict()), 200 if summary.error is None else 502
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/queue/reconcile", category=category.value, error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


# ==============================================================================
# Order export queue
# ==============================================================================

@api_bp.route("/order-exports", methods=["POST"])
@require_admin_token
def order_exports_enqueue():
    """Queue {"order_reference", "action": "export"|"cancel", "payload"} for the WMS."""
    data = request.get_json(silent=True) or {}
    try:
        action = ExportAction(data.get("action", "export"))
    except ValueError:
        return jsonify({'error': "action must be 'export' or 'cancel'"}), 400
    if not data.get("order_reference"):
        return jsonify({'error': "order_reference is required"}), 400

    try:
        item, created = OrderExportQueue.enqueue(data["order_reference"], action, data.get("payload"))
        return jsonify({"item": item.to_dict(), "created": created}), 201 if created else 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/order-exports", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/order-exports/stats", methods=["GET"])
@require_admin_token
def order_exports_stats():
    try:
        return jsonify(OrderExportQueue.get_stats()), 200
    except Exception as e:
        logger.error("Error in /api/order-exports/stats", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500


@api_bp.route("/order-exports/retry-failed", methods=["POST"])
@require_admin_token
def order_exports_retry_failed():
    try:
        ids = _requested_ids()
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    try:
        return jsonify({"reset": OrderExportQueue.retry_failed(ids)}), 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/order-exports/retry-failed", error=str(e), exc_info=True)
        return jsonify({'error': str(e)}), 500
