import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration class with common settings."""
    # WMS connection
    WMS_API_BASE_URL = os.environ.get("WMS_API_BASE_URL")
    WMS_USERNAME = os.environ.get("WMS_USERNAME")
    WMS_PASSWORD = os.environ.get("WMS_PASSWORD")
    WMS_CODE = os.environ.get("WMS_CODE")
    WMS_CUSTOMER_CODE = os.environ.get("WMS_CUSTOMER_CODE")
    WMS_CUSTOMER_ID = os.environ.get("WMS_CUSTOMER_ID")

    # Inbound webhooks
    WMS_WEBHOOK_SECRET = os.environ.get("WMS_WEBHOOK_SECRET")

    # Automation gate. Events are always stored; processing waits until the
    # initial catalogue/order sync has been done.
    INITIAL_SYNC_COMPLETED = _env_bool("INITIAL_SYNC_COMPLETED", False)

    # When set, order.updated skips its order.created prerequisite for orders
    # that already exist locally (imported before webhooks were switched on).
    PREREQUISITE_EXISTENCE_BYPASS = _env_bool("PREREQUISITE_EXISTENCE_BYPASS", True)

    # Queue behaviour
    QUEUE_MAX_ATTEMPTS = 3
    QUEUE_RETRY_INTERVALS = [30, 120, 300, 900, 3600]  # seconds
    WEBHOOK_QUEUE_BATCH_SIZE = 20
    STUCK_PROCESSING_MINUTES = 5
    DEFERRED_TIMEOUT_HOURS = _env_int("DEFERRED_TIMEOUT_HOURS", 48)
    HEALTH_MAX_PENDING_AGE_MINUTES = 60

    # Outbound order export queue
    ORDER_EXPORT_BATCH_SIZE = 10
    ORDER_EXPORT_MAX_ATTEMPTS = 5

    # Retention
    RETENTION_COMPLETED_DAYS = 7
    RETENTION_FAILED_DAYS = 30
    RETENTION_RECEIPTS_DAYS = 30

    # Scheduler
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
    WEBHOOK_QUEUE_INTERVAL_SECONDS = 60
    ORDER_EXPORT_INTERVAL_SECONDS = 120
    STUCK_CHECK_INTERVAL_SECONDS = 300
    CLEANUP_INTERVAL_HOURS = 24
    RECONCILIATION_INTERVALS_MINUTES = {
        "stock": 60,
        "orders": 120,
        "shipments": 180,
        "inbounds": 240,
    }

    # Operational API
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")
    LOG_JSON = _env_bool("LOG_JSON", False)

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration used by the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    SCHEDULER_ENABLED = False
    INITIAL_SYNC_COMPLETED = True
    PREREQUISITE_EXISTENCE_BYPASS = False
    WMS_WEBHOOK_SECRET = "test-webhook-secret"
    ADMIN_API_TOKEN = None
    LOG_FILE = None
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
