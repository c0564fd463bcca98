from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from wms_sync.datetime_utils import utcnow
from wms_sync.events.envelope import InboundEnvelope
from wms_sync.events.result import DispatchResult
from wms_sync.logging_config import get_logger
from wms_sync.models import db, EventSource
from wms_sync.services.deduplicator import Deduplicator
from wms_sync.services.event_store import EventStore
from wms_sync.services.queue_runner import QueueRunner, ProcessingOptions

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    event_id: Optional[int] = None
    dispatch: Optional[DispatchResult] = None

    @property
    def status(self) -> str:
        return "queued" if self.accepted else "duplicate"

    def to_dict(self):
        return {
            "status": self.status,
            "event_id": self.event_id,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
        }


class IngestionService:
    """Deduplicator -> event store -> immediate dispatch attempt."""

    def __init__(self, runner: QueueRunner):
        self.runner = runner

    def ingest(self, envelope: InboundEnvelope, options: ProcessingOptions,
               source: EventSource = EventSource.WEBHOOK, dispatch_immediately: bool = True,
               now: Optional[datetime] = None) -> IngestResult:
        """
        Admit an envelope and try to process it straight away.

        The delivery receipt and the event row commit together. Duplicates
        return ``accepted=False`` without touching the queue. When the
        immediate attempt is skipped or fails the event stays in the store
        for the periodic pass.
        """
        now = now or utcnow()

        if not Deduplicator.admit(envelope.delivery_id, now):
            db.session.rollback()
            return IngestResult(accepted=False)

        event = EventStore.create(envelope, source=source, now=now)
        event_id = event.id
        db.session.commit()

        logger.info(
            "Event admitted",
            event_id=event_id,
            delivery_id=envelope.delivery_id,
            topic=str(envelope.event_type),
            entity_key=envelope.entity_key,
            source=source.value,
        )

        dispatch = None
        if dispatch_immediately:
            dispatch = self.runner.process_immediately(event_id, options, now)
        return IngestResult(accepted=True, event_id=event_id, dispatch=dispatch)
