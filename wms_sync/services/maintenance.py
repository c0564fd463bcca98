from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from wms_sync.datetime_utils import utcnow, format_datetime_iso
from wms_sync.events.result import DispatchOutcome, ErrorKind, QueueError
from wms_sync.logging_config import get_logger
from wms_sync.models import EventStatus, ExportStatus
from wms_sync.services.deduplicator import Deduplicator
from wms_sync.services.event_store import EventStore
from wms_sync.services.order_export import OrderExportQueue
from wms_sync.services.retry_policy import RetryController
from wms_sync.signals import queue_unhealthy

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    completed: timedelta = timedelta(days=7)
    failed: timedelta = timedelta(days=30)
    receipts: timedelta = timedelta(days=30)

    @classmethod
    def from_config(cls, config) -> "RetentionPolicy":
        return cls(
            completed=timedelta(days=config.get("RETENTION_COMPLETED_DAYS", 7)),
            failed=timedelta(days=config.get("RETENTION_FAILED_DAYS", 30)),
            receipts=timedelta(days=config.get("RETENTION_RECEIPTS_DAYS", 30)),
        )


class QueueMaintenance:
    """Retention purges, deferred timeouts and the queue health check."""

    def __init__(self, retry_controller: RetryController,
                 retention: RetentionPolicy = RetentionPolicy(),
                 deferred_timeout: timedelta = timedelta(hours=48),
                 stuck_timeout: timedelta = timedelta(minutes=5),
                 max_pending_age: timedelta = timedelta(minutes=60)):
        self.retry_controller = retry_controller
        self.retention = retention
        self.deferred_timeout = deferred_timeout
        self.stuck_timeout = stuck_timeout
        self.max_pending_age = max_pending_age

    def fail_expired_deferred(self, now: Optional[datetime] = None) -> int:
        """
        Fail deferred events whose prerequisite never completed.

        An entity whose "created" event never arrives would otherwise keep
        its dependents deferred forever.
        """
        now = now or utcnow()
        cutoff = now - self.deferred_timeout
        failed = 0
        for event in EventStore.find_deferred_before(cutoff):
            hours = int(self.deferred_timeout.total_seconds() // 3600)
            error = QueueError(
                ErrorKind.PREREQUISITE_TIMEOUT,
                f"Prerequisites not completed within {hours} hours",
            )
            result = self.retry_controller.fail(event, error, now, from_statuses=(EventStatus.DEFERRED,))
            if result.outcome == DispatchOutcome.FAILED:
                failed += 1
        return failed

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        purged = {
            "completed": EventStore.purge(EventStatus.COMPLETED, now - self.retention.completed),
            "failed": EventStore.purge(EventStatus.FAILED, now - self.retention.failed),
            "receipts": Deduplicator.purge(now - self.retention.receipts),
            "order_exports_completed": OrderExportQueue.purge(ExportStatus.COMPLETED, now - self.retention.completed),
            "order_exports_failed": OrderExportQueue.purge(ExportStatus.FAILED, now - self.retention.failed),
        }
        logger.info("Queue cleanup finished", **purged)
        return purged

    def run_cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        result = {"deferred_timed_out": self.fail_expired_deferred(now)}
        result.update(self.purge_expired(now))
        return result

    def get_health(self, now: Optional[datetime] = None) -> dict:
        """
        Snapshot of queue health.

        Unhealthy when events are stuck in processing or the oldest pending
        event has waited longer than max_pending_age. Unhealthy snapshots are
        also sent on the queue_unhealthy signal.
        """
        now = now or utcnow()
        stats = EventStore.get_stats()
        stuck = EventStore.find_stuck(now - self.stuck_timeout)

        issues = []
        if stuck:
            issues.append(f"{len(stuck)} event(s) stuck in processing")

        oldest_pending_age = None
        oldest = EventStore.oldest_pending_at()
        if oldest is not None:
            oldest_pending_age = (now - oldest).total_seconds()
            if oldest_pending_age > self.max_pending_age.total_seconds():
                issues.append(f"Oldest pending event is {int(oldest_pending_age // 60)} minutes old")

        health = {
            "status": "unhealthy" if issues else "healthy",
            "issues": issues,
            "stuck_count": len(stuck),
            "stuck_event_ids": [e.id for e in stuck],
            "oldest_pending_age_seconds": oldest_pending_age,
            "stats": stats,
            "checked_at": format_datetime_iso(now),
        }

        if issues:
            logger.warning("Webhook queue unhealthy", issues=issues, stuck_count=len(stuck))
            queue_unhealthy.send(self, health=health)
        return health
