from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from wms_sync.datetime_utils import utcnow
from wms_sync.events.result import BatchSummary, DispatchOutcome, DispatchResult, ErrorKind
from wms_sync.logging_config import get_logger, QueueRunContext
from wms_sync.models import db, WebhookEvent
from wms_sync.services.dispatcher import Dispatcher
from wms_sync.services.event_store import EventStore
from wms_sync.services.prerequisites import PrerequisiteResolver
from wms_sync.services.retry_policy import RetryController
from wms_sync.services.scheduler import PriorityScheduler

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessingOptions:
    """Run-time switches handed to each queue invocation."""
    automation_enabled: bool = True
    batch_size: int = 20

    @classmethod
    def from_config(cls, config: Mapping) -> "ProcessingOptions":
        return cls(
            automation_enabled=bool(config.get("INITIAL_SYNC_COMPLETED", False)),
            batch_size=int(config.get("WEBHOOK_QUEUE_BATCH_SIZE", 20)),
        )


class QueueRunner:
    """
    Drives the dispatcher from two entry points.

    ``process_immediately`` dispatches a single freshly admitted event.
    ``process_batch`` is the periodic pass: recover stuck events, promote
    deferred events whose prerequisites are now met, then dispatch a capped,
    prioritised batch one event at a time.
    """

    def __init__(self, dispatcher: Dispatcher, stuck_timeout: timedelta = timedelta(minutes=5)):
        self.dispatcher = dispatcher
        self.stuck_timeout = stuck_timeout

    @property
    def resolver(self) -> PrerequisiteResolver:
        return self.dispatcher.resolver

    @property
    def retry_controller(self) -> RetryController:
        return self.dispatcher.retry_controller

    def process_immediately(self, event_id: int, options: ProcessingOptions,
                            now: Optional[datetime] = None) -> Optional[DispatchResult]:
        """Dispatch one event now. None when automation is off or the event is gone."""
        if not options.automation_enabled:
            logger.debug("Automation disabled, event left for later", event_id=event_id)
            return None

        event = EventStore.get(event_id)
        if event is None:
            return None
        return self._dispatch_safely(event, now)

    def process_batch(self, options: ProcessingOptions, now: Optional[datetime] = None) -> BatchSummary:
        summary = BatchSummary()
        if not options.automation_enabled:
            summary.skipped_reason = "automation_disabled"
            logger.info("Webhook queue pass skipped, initial sync not completed")
            return summary

        now = now or utcnow()
        with QueueRunContext("webhook_queue"):
            summary.reset_stuck = self.recover_stuck(now)
            summary.promoted = self.promote_deferred(now)

            for event in PriorityScheduler.select_batch(options.batch_size, now):
                summary.record(self._dispatch_safely(event, now))

            logger.info("Webhook queue pass finished", **summary.to_dict())
        return summary

    def recover_stuck(self, now: Optional[datetime] = None) -> int:
        """Count events stuck in processing as failed attempts."""
        now = now or utcnow()
        cutoff = now - self.stuck_timeout
        recovered = 0
        for event in EventStore.find_stuck(cutoff):
            logger.warning(
                "Event stuck in processing",
                event_id=event.id,
                topic=event.topic,
                since=event.updated_at.isoformat(),
            )
            result = self.retry_controller.handle_failure(
                event,
                f"Stuck in processing for more than {int(self.stuck_timeout.total_seconds() // 60)} minutes",
                now,
                kind=ErrorKind.STUCK,
            )
            if result.outcome != DispatchOutcome.NOOP:
                recovered += 1
        return recovered

    def promote_deferred(self, now: Optional[datetime] = None) -> int:
        """Move deferred events whose prerequisites are satisfied back to pending."""
        now = now or utcnow()
        promoted = 0
        for event in EventStore.find_deferred():
            if self.resolver.is_ready(event) and EventStore.promote(event.id, now):
                promoted += 1
                logger.debug("Deferred event promoted", event_id=event.id, topic=event.topic)
        db.session.commit()
        return promoted

    def _dispatch_safely(self, event: WebhookEvent, now: Optional[datetime]) -> DispatchResult:
        event_id = event.id
        try:
            return self.dispatcher.dispatch(event, now)
        except Exception as e:
            # Queue bookkeeping itself failed (database error); leave the row for the next pass
            db.session.rollback()
            logger.error("Dispatch error", event_id=event_id, error=str(e), exc_info=True)
            return DispatchResult(event_id, DispatchOutcome.NOOP)
