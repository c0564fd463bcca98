import os
import atexit

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

# scheduler imports
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

from wms_sync.logging_config import configure_logging, get_logger
from wms_sync.models import db

logger = get_logger(__name__)


def init_scheduler(app):
    """Start the background scheduler driving the queue, reconciliation and maintenance jobs."""
    from wms_sync import jobs

    if not app.config.get("SCHEDULER_ENABLED", True):
        logger.info("Scheduler disabled by configuration")
        return None

    # --- Prevent scheduler duplication in multi-worker environments ---
    # Only run the scheduler on one instance
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true" and not os.environ.get("IS_SCHEDULER_WORKER"):
        logger.info("Skipping scheduler startup on this worker")
        return None

    # Sequential dispatch: one job of each kind at a time, missed runs coalesced
    executors = {"default": ThreadPoolExecutor(3)}
    job_defaults = {"max_instances": 1, "coalesce": True}
    scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)

    scheduler.add_job(
        func=jobs.process_webhook_queue,
        args=[app],
        trigger="interval",
        seconds=app.config["WEBHOOK_QUEUE_INTERVAL_SECONDS"],
        id="webhook_queue",
        replace_existing=True,
    )
    scheduler.add_job(
        func=jobs.process_order_exports,
        args=[app],
        trigger="interval",
        seconds=app.config["ORDER_EXPORT_INTERVAL_SECONDS"],
        id="order_export",
        replace_existing=True,
    )
    scheduler.add_job(
        func=jobs.recover_stuck_events,
        args=[app],
        trigger="interval",
        seconds=app.config["STUCK_CHECK_INTERVAL_SECONDS"],
        id="stuck_check",
        replace_existing=True,
    )
    scheduler.add_job(
        func=jobs.check_queue_health,
        args=[app],
        trigger="interval",
        seconds=app.config["STUCK_CHECK_INTERVAL_SECONDS"],
        id="health_check",
        replace_existing=True,
    )
    scheduler.add_job(
        func=jobs.cleanup_queue,
        args=[app],
        trigger="interval",
        hours=app.config["CLEANUP_INTERVAL_HOURS"],
        id="cleanup",
        replace_existing=True,
    )
    for category, minutes in app.config["RECONCILIATION_INTERVALS_MINUTES"].items():
        scheduler.add_job(
            func=jobs.reconcile,
            args=[app, category],
            trigger="interval",
            minutes=minutes,
            id=f"reconcile_{category}",
            replace_existing=True,
        )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler


def create_app(config_class=None, registry=None, source_factory=None, exporter_factory=None):
    """
    Application factory.

    Args:
        config_class: Config class to load; defaults to get_config() from the environment
        registry: HandlerRegistry to use; defaults to the storefront handlers
        source_factory: Callable returning the reconciliation source (defaults to the WMS client)
        exporter_factory: Callable returning the order exporter (defaults to the WMS client)
    """
    # Import config after dotenv is loaded
    from wms_sync.config import get_config
    from wms_sync.db_config import configure_database, enable_sqlite_savepoints
    from wms_sync.runtime import build_runtime, EXTENSION_KEY
    from wms_sync.webhooks import webhooks_bp
    from wms_sync.api import api_bp

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    configure_logging(
        log_level=app.config.get("LOG_LEVEL", "INFO"),
        log_file=app.config.get("LOG_FILE"),
        json_console=app.config.get("LOG_JSON", False),
    )

    # Configure database separately
    configure_database(app)

    logger.info(f"Starting application in {config_class.ENV} environment")
    logger.info(f"Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set')[:50]}...")

    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]
    CORS(app, resources={r"/api/*": {"origins": allowed_origins}})

    db.init_app(app)
    with app.app_context():
        enable_sqlite_savepoints(db.engine)

    app.extensions[EXTENSION_KEY] = build_runtime(
        app.config,
        registry=registry,
        source_factory=source_factory,
        exporter_factory=exporter_factory,
    )

    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(api_bp, url_prefix="/api")

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    @app.errorhandler(Exception)
    def handle_exception(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.error("Unhandled exception", error=str(e), exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    try:
        init_scheduler(app)
    except Exception as e:
        logger.error("Failed to start scheduler", error=str(e), exc_info=True)

    return app
