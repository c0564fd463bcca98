import logging
import logging.config
import structlog
import uuid
import sys
from typing import Optional

from wms_sync.datetime_utils import utcnow

# Applied to structlog and stdlib records alike (werkzeug, apscheduler, sqlalchemy)
SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None, json_console: bool = False):
    """
    Configure structured logging for the application.

    Queue runs bind ``run_id``/``run_type`` into the context, so every line
    logged while a run is active carries them.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional rotating JSON log file. If None, logs to stdout only.
        json_console: Render stdout as JSON instead of key=value text
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_renderer = (
        structlog.processors.JSONRenderer() if json_console
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, console_renderer],
                "foreign_pre_chain": SHARED_PROCESSORS,
            },
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.JSONRenderer(),
                ],
                "foreign_pre_chain": SHARED_PROCESSORS,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "console",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False
            },
            # APScheduler logs every job execution at INFO
            "apscheduler": {
                "level": "WARNING",
            },
        }
    }

    if log_file:
        log_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }
        log_config["loggers"][""]["handlers"].append("file")

    logging.config.dictConfig(log_config)

    logger = structlog.get_logger("wms_sync")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class QueueRunContext:
    """
    One periodic queue run (batch pass, export pass, reconciliation).

    Binds a short ``run_id`` and the ``run_type`` into the structlog context
    for the duration of the run and logs its outcome and duration. Exceptions
    propagate.
    """

    def __init__(self, run_type: str, run_id: Optional[str] = None):
        self.run_type = run_type
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.logger = get_logger("wms_sync.runs")
        self.start_time = None
        self._tokens = None

    def __enter__(self):
        self.start_time = utcnow()
        self._tokens = structlog.contextvars.bind_contextvars(run_id=self.run_id, run_type=self.run_type)
        self.logger.debug("Queue run started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (utcnow() - self.start_time).total_seconds()
        try:
            if exc_type is None:
                self.logger.info("Queue run completed", duration_seconds=duration)
            else:
                self.logger.error(
                    "Queue run failed",
                    duration_seconds=duration,
                    error_type=exc_type.__name__,
                    error_message=str(exc_val),
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._tokens)
        return False
