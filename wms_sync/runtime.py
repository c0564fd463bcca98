"""
Wiring of the queue services for one Flask app.

Built once in ``create_app`` from the app config and the (frozen) handler
registry, then stored on ``app.extensions["wms_sync"]``.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from flask import current_app

from wms_sync.events.registry import HandlerRegistry
from wms_sync.events.types import ORDER_UPDATED
from wms_sync.handlers import build_default_registry, order_exists
from wms_sync.services.dispatcher import Dispatcher
from wms_sync.services.ingestion import IngestionService
from wms_sync.services.maintenance import QueueMaintenance, RetentionPolicy
from wms_sync.services.order_export import OrderExportQueue
from wms_sync.services.prerequisites import PrerequisiteResolver
from wms_sync.services.queue_runner import QueueRunner, ProcessingOptions
from wms_sync.services.reconciliation import ReconciliationPoller
from wms_sync.services.retry_policy import RetryController
from wms_sync.wms.client import get_wms_client

EXTENSION_KEY = "wms_sync"


@dataclass
class QueueRuntime:
    registry: HandlerRegistry
    resolver: PrerequisiteResolver
    retry_controller: RetryController
    dispatcher: Dispatcher
    runner: QueueRunner
    ingestion: IngestionService
    maintenance: QueueMaintenance
    order_exports: OrderExportQueue
    reconciliation: ReconciliationPoller


def build_runtime(config, registry: Optional[HandlerRegistry] = None,
                  source_factory: Optional[Callable] = None,
                  exporter_factory: Optional[Callable] = None) -> QueueRuntime:
    registry = (registry if registry is not None else build_default_registry()).freeze()

    resolver = PrerequisiteResolver()
    if config.get("PREREQUISITE_EXISTENCE_BYPASS"):
        resolver.register_probe(ORDER_UPDATED, order_exists)

    retry_controller = RetryController(
        max_attempts=config.get("QUEUE_MAX_ATTEMPTS", 3),
        intervals=config.get("QUEUE_RETRY_INTERVALS", [30, 120, 300, 900, 3600]),
    )
    stuck_timeout = timedelta(minutes=config.get("STUCK_PROCESSING_MINUTES", 5))

    dispatcher = Dispatcher(registry, resolver, retry_controller)
    runner = QueueRunner(dispatcher, stuck_timeout=stuck_timeout)
    ingestion = IngestionService(runner)

    maintenance = QueueMaintenance(
        retry_controller,
        retention=RetentionPolicy.from_config(config),
        deferred_timeout=timedelta(hours=config.get("DEFERRED_TIMEOUT_HOURS", 48)),
        stuck_timeout=stuck_timeout,
        max_pending_age=timedelta(minutes=config.get("HEALTH_MAX_PENDING_AGE_MINUTES", 60)),
    )

    return QueueRuntime(
        registry=registry,
        resolver=resolver,
        retry_controller=retry_controller,
        dispatcher=dispatcher,
        runner=runner,
        ingestion=ingestion,
        maintenance=maintenance,
        order_exports=OrderExportQueue(
            exporter_factory or get_wms_client,
            max_attempts=config.get("ORDER_EXPORT_MAX_ATTEMPTS", 5),
        ),
        reconciliation=ReconciliationPoller(source_factory or get_wms_client, ingestion),
    )


def get_runtime() -> QueueRuntime:
    return current_app.extensions[EXTENSION_KEY]


def processing_options() -> ProcessingOptions:
    """ProcessingOptions for the current app's configuration."""
    return ProcessingOptions.from_config(current_app.config)
