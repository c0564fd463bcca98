from datetime import datetime
from typing import Optional

from wms_sync.datetime_utils import utcnow
from wms_sync.events.errors import PermanentHandlerError
from wms_sync.events.registry import HandlerContext, HandlerRegistry
from wms_sync.events.result import DispatchOutcome, DispatchResult, ErrorKind, QueueError
from wms_sync.logging_config import get_logger
from wms_sync.models import db, WebhookEvent
from wms_sync.services.event_store import EventStore
from wms_sync.services.prerequisites import PrerequisiteResolver
from wms_sync.services.retry_policy import RetryController, format_error

logger = get_logger(__name__)


class Dispatcher:
    """
    Runs one event through its handler.

    1. Not ready (prerequisites unmet) -> deferred, SKIPPED.
    2. Claim: pending -> processing, attempts + 1. Losing the claim is a NOOP.
    3. No handler registered -> failed, not retried.
    4. Handler runs inside a SAVEPOINT; an exception rolls back everything
       it wrote.
    5. Success -> completed, committed together with the handler's writes.
    6. Errors go to the RetryController.

    The dispatcher only touches queue metadata; side effects belong to the
    handler.
    """

    def __init__(self, registry: HandlerRegistry, resolver: PrerequisiteResolver,
                 retry_controller: RetryController):
        self.registry = registry
        self.resolver = resolver
        self.retry_controller = retry_controller

    def dispatch(self, event: WebhookEvent, now: Optional[datetime] = None) -> DispatchResult:
        now = now or utcnow()
        event_id = event.id

        missing = self.resolver.missing_for(event)
        if missing:
            deferred = EventStore.defer(event_id, now)
            db.session.commit()
            if not deferred:
                return DispatchResult(event_id, DispatchOutcome.NOOP)
            logger.debug(
                "Event deferred, prerequisites not completed",
                event_id=event_id,
                topic=event.topic,
                entity_key=event.entity_key,
                missing=[str(t) for t in missing],
            )
            return DispatchResult(event_id, DispatchOutcome.SKIPPED)

        claimed = EventStore.claim(event_id, now)
        db.session.commit()
        if not claimed:
            logger.debug("Event not pending, dispatch skipped", event_id=event_id)
            return DispatchResult(event_id, DispatchOutcome.NOOP)

        event_type = event.event_type
        handler = self.registry.get(event_type)
        if handler is None:
            return self.retry_controller.fail(
                event, QueueError(ErrorKind.NO_HANDLER, f"No handler registered for {event_type}"), now
            )

        context = HandlerContext(
            event_id=event_id,
            event_type=event_type,
            entity_key=event.entity_key,
            delivery_id=event.delivery_id,
            attempt=event.attempts,
        )

        try:
            with db.session.begin_nested():
                handler(event.payload, context)
        except PermanentHandlerError as e:
            return self.retry_controller.fail(
                event, QueueError(ErrorKind.PERMANENT, format_error(e)), now
            )
        except Exception as e:
            return self.retry_controller.handle_failure(event, e, now)

        completed = EventStore.complete(event_id, now)
        if not completed:
            # Reclaimed while the handler ran (stuck recovery); drop its writes
            db.session.rollback()
            logger.warning("Event left processing during dispatch, changes discarded", event_id=event_id)
            return DispatchResult(event_id, DispatchOutcome.NOOP)
        db.session.commit()

        logger.info(
            "Event processed",
            event_id=event_id,
            topic=str(event_type),
            entity_key=context.entity_key,
            attempt=context.attempt,
        )
        return DispatchResult(event_id, DispatchOutcome.COMPLETED)
