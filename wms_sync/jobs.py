"""
Periodic jobs run by the background scheduler.

Each job opens its own app context and never lets an exception escape into
APScheduler; failures are logged and the next tick tries again.
"""
from wms_sync.logging_config import get_logger
from wms_sync.models import db
from wms_sync.runtime import get_runtime, processing_options
from wms_sync.services.reconciliation import ReconciliationCategory

logger = get_logger(__name__)


def _run(app, name, fn):
    with app.app_context():
        try:
            return fn()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Scheduled job {name} failed", error=str(e), exc_info=True)
            return None


def process_webhook_queue(app):
    return _run(app, "webhook_queue", lambda: get_runtime().runner.process_batch(processing_options()))


def process_order_exports(app):
    return _run(
        app,
        "order_export",
        lambda: get_runtime().order_exports.process_pending(limit=app.config.get("ORDER_EXPORT_BATCH_SIZE", 10)),
    )


def reconcile(app, category):
    category = ReconciliationCategory(category)
    return _run(
        app,
        f"reconcile_{category.value}",
        lambda: get_runtime().reconciliation.run(category, processing_options()),
    )


def recover_stuck_events(app):
    return _run(app, "stuck_check", lambda: get_runtime().runner.recover_stuck())


def check_queue_health(app):
    return _run(app, "health_check", lambda: get_runtime().maintenance.get_health())


def cleanup_queue(app):
    return _run(app, "cleanup", lambda: get_runtime().maintenance.run_cleanup())
