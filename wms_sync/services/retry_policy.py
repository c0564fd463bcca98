from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from wms_sync.datetime_utils import utcnow
from wms_sync.events.result import DispatchOutcome, DispatchResult, ErrorKind, QueueError
from wms_sync.logging_config import get_logger
from wms_sync.models import db, WebhookEvent, EventStatus
from wms_sync.services.event_store import EventStore
from wms_sync.signals import event_failed

logger = get_logger(__name__)

DEFAULT_RETRY_INTERVALS = (30, 120, 300, 900, 3600)  # seconds
DEFAULT_MAX_ATTEMPTS = 3
MAX_ERROR_LENGTH = 2000


def format_error(error) -> str:
    if isinstance(error, BaseException):
        message = f"{type(error).__name__}: {error}"
    else:
        message = str(error)
    return message[:MAX_ERROR_LENGTH]


class RetryController:
    """Turns a failed attempt into a scheduled retry or a terminal failure."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 intervals: Sequence[int] = DEFAULT_RETRY_INTERVALS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not intervals:
            raise ValueError("At least one retry interval is required")
        self.max_attempts = max_attempts
        self.intervals = tuple(int(i) for i in intervals)

    def delay_for(self, attempts: int) -> timedelta:
        """Delay after the given attempt number. The last interval repeats."""
        index = min(max(attempts, 1) - 1, len(self.intervals) - 1)
        return timedelta(seconds=self.intervals[index])

    def handle_failure(self, event: WebhookEvent, error, now: Optional[datetime] = None,
                       kind: ErrorKind = ErrorKind.HANDLER_ERROR) -> DispatchResult:
        """
        Record a failed attempt of a processing event.

        attempts >= max_attempts: failed, error kept, event_failed sent.
        Otherwise: back to pending with next_attempt_at = now + delay_for(attempts).
        """
        now = now or utcnow()
        message = format_error(error)
        attempts = event.attempts

        if attempts >= self.max_attempts:
            exhausted_kind = ErrorKind.EXHAUSTED if kind == ErrorKind.HANDLER_ERROR else kind
            return self.fail(event, QueueError(exhausted_kind, message), now)

        next_attempt_at = now + self.delay_for(attempts)
        scheduled = EventStore.schedule_retry(event.id, message, next_attempt_at, now)
        db.session.commit()

        if not scheduled:
            logger.warning("Retry not scheduled, event no longer processing", event_id=event.id)
            return DispatchResult(event.id, DispatchOutcome.NOOP)

        logger.warning(
            "Event attempt failed, retry scheduled",
            event_id=event.id,
            topic=event.topic,
            entity_key=event.entity_key,
            attempts=attempts,
            max_attempts=self.max_attempts,
            next_attempt_at=next_attempt_at.isoformat(),
            error=message[:200],
            kind=kind.value,
        )
        return DispatchResult(event.id, DispatchOutcome.RETRY_SCHEDULED, QueueError(kind, message))

    def fail(self, event: WebhookEvent, error: QueueError, now: Optional[datetime] = None,
             from_statuses: Iterable[EventStatus] = (EventStatus.PROCESSING,)) -> DispatchResult:
        """Mark the event terminally failed and emit event_failed."""
        now = now or utcnow()
        failed = EventStore.fail(event.id, error.message, now, from_statuses)
        db.session.commit()

        if not failed:
            return DispatchResult(event.id, DispatchOutcome.NOOP)

        logger.error(
            "Event failed permanently",
            event_id=event.id,
            topic=event.topic,
            entity_key=event.entity_key,
            attempts=event.attempts,
            kind=error.kind.value,
            error=error.message[:200],
        )
        event_failed.send(
            self,
            event_id=event.id,
            topic=event.topic,
            entity_key=event.entity_key,
            error=error,
        )
        return DispatchResult(event.id, DispatchOutcome.FAILED, error)
