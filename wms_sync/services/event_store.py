"""
Durable storage and atomic state transitions for inbound events.

Every status change is a single conditional ``UPDATE ... WHERE status IN
(...)``; the returned row count tells the caller whether it won the
transition. Transition helpers do not commit. The caller owns the unit of
work. Operational helpers (retry, requeue, purge) commit themselves.
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from wms_sync.datetime_utils import utcnow, format_datetime_iso
from wms_sync.events.envelope import InboundEnvelope
from wms_sync.events.types import EventGroup, EventType, PREREQUISITE_TARGETS, priority_for
from wms_sync.logging_config import get_logger
from wms_sync.models import db, EntityMilestone, WebhookEvent, EventStatus, EventSource

logger = get_logger(__name__)

MAX_RECENT_ACTIVITY = 500


class EventStore:
    """Service for reading and transitioning stored webhook events"""

    @staticmethod
    def create(envelope: InboundEnvelope, source: EventSource = EventSource.WEBHOOK,
               now: Optional[datetime] = None) -> WebhookEvent:
        """Persist an admitted envelope as a pending event (flushed, not committed)."""
        now = now or utcnow()
        event = WebhookEvent(
            delivery_id=envelope.delivery_id,
            group_name=envelope.event_type.group.value,
            action=envelope.event_type.action,
            entity_key=envelope.entity_key,
            payload=envelope.payload,
            priority=priority_for(envelope.event_type),
            status=EventStatus.PENDING,
            attempts=0,
            next_attempt_at=None,
            source=source,
            created_at=now,
            updated_at=now,
        )
        db.session.add(event)
        db.session.flush()

        logger.debug(
            "Event stored",
            event_id=event.id,
            delivery_id=event.delivery_id,
            topic=event.topic,
            entity_key=event.entity_key,
            priority=event.priority,
        )
        return event

    @staticmethod
    def get(event_id: int) -> Optional[WebhookEvent]:
        return db.session.get(WebhookEvent, event_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(event_id: int, from_statuses: Iterable[EventStatus], values: dict) -> bool:
        rowcount = WebhookEvent.query.filter(
            WebhookEvent.id == event_id,
            WebhookEvent.status.in_(list(from_statuses)),
        ).update(values, synchronize_session=False)
        return rowcount == 1

    @staticmethod
    def claim(event_id: int, now: Optional[datetime] = None) -> bool:
        """pending -> processing, attempts + 1. False if the row was not pending."""
        now = now or utcnow()
        return EventStore._transition(event_id, [EventStatus.PENDING], {
            WebhookEvent.status: EventStatus.PROCESSING,
            WebhookEvent.attempts: WebhookEvent.attempts + 1,
            WebhookEvent.updated_at: now,
        })

    @staticmethod
    def defer(event_id: int, now: Optional[datetime] = None) -> bool:
        """pending -> deferred"""
        return EventStore._transition(event_id, [EventStatus.PENDING], {
            WebhookEvent.status: EventStatus.DEFERRED,
            WebhookEvent.updated_at: now or utcnow(),
        })

    @staticmethod
    def promote(event_id: int, now: Optional[datetime] = None) -> bool:
        """deferred -> pending"""
        return EventStore._transition(event_id, [EventStatus.DEFERRED], {
            WebhookEvent.status: EventStatus.PENDING,
            WebhookEvent.updated_at: now or utcnow(),
        })

    @staticmethod
    def complete(event_id: int, now: Optional[datetime] = None) -> bool:
        """processing -> completed, recording a milestone for prerequisite types"""
        now = now or utcnow()
        completed = EventStore._transition(event_id, [EventStatus.PROCESSING], {
            WebhookEvent.status: EventStatus.COMPLETED,
            WebhookEvent.processed_at: now,
            WebhookEvent.next_attempt_at: None,
            WebhookEvent.error_message: None,
            WebhookEvent.updated_at: now,
        })
        if completed:
            event = db.session.get(WebhookEvent, event_id)
            if event.event_type in PREREQUISITE_TARGETS:
                EventStore.record_milestone(event.entity_key, event.event_type, now)
        return completed

    @staticmethod
    def record_milestone(entity_key: str, event_type: EventType, now: Optional[datetime] = None) -> None:
        """Remember that event_type completed for the entity (flushed, not committed)."""
        if EventStore._has_milestone(entity_key, event_type):
            return
        try:
            with db.session.begin_nested():
                db.session.add(EntityMilestone(
                    entity_key=entity_key,
                    group_name=event_type.group.value,
                    action=event_type.action,
                    completed_at=now or utcnow(),
                ))
                db.session.flush()
        except IntegrityError:
            # Recorded by a concurrent completion of the same type
            logger.debug("Milestone already recorded", entity_key=entity_key, topic=str(event_type))

    @staticmethod
    def schedule_retry(event_id: int, error_message: str, next_attempt_at: datetime,
                       now: Optional[datetime] = None) -> bool:
        """processing -> pending, due again at next_attempt_at"""
        return EventStore._transition(event_id, [EventStatus.PROCESSING], {
            WebhookEvent.status: EventStatus.PENDING,
            WebhookEvent.next_attempt_at: next_attempt_at,
            WebhookEvent.error_message: error_message,
            WebhookEvent.updated_at: now or utcnow(),
        })

    @staticmethod
    def fail(event_id: int, error_message: str, now: Optional[datetime] = None,
             from_statuses: Iterable[EventStatus] = (EventStatus.PROCESSING,)) -> bool:
        """-> failed (terminal)"""
        now = now or utcnow()
        return EventStore._transition(event_id, from_statuses, {
            WebhookEvent.status: EventStatus.FAILED,
            WebhookEvent.next_attempt_at: None,
            WebhookEvent.error_message: error_message,
            WebhookEvent.processed_at: now,
            WebhookEvent.updated_at: now,
        })

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def has_completed(entity_key: str, event_type: EventType) -> bool:
        """
        True if an event of this type ever completed for the entity.

        Checks stored completed events first, then the milestones that
        outlive the completed-event purge.
        """
        stored = db.session.query(
            WebhookEvent.query.filter(
                WebhookEvent.entity_key == entity_key,
                WebhookEvent.group_name == event_type.group.value,
                WebhookEvent.action == event_type.action,
                WebhookEvent.status == EventStatus.COMPLETED,
            ).exists()
        ).scalar()
        return bool(stored) or EventStore._has_milestone(entity_key, event_type)

    @staticmethod
    def _has_milestone(entity_key: str, event_type: EventType) -> bool:
        return bool(db.session.query(
            EntityMilestone.query.filter_by(
                entity_key=entity_key,
                group_name=event_type.group.value,
                action=event_type.action,
            ).exists()
        ).scalar())

    @staticmethod
    def latest_completed_at(entity_key: str, group: EventGroup) -> Optional[datetime]:
        """processed_at of the newest completed event in the group for the entity."""
        return db.session.query(func.max(WebhookEvent.processed_at)).filter(
            WebhookEvent.entity_key == entity_key,
            WebhookEvent.group_name == group.value,
            WebhookEvent.status == EventStatus.COMPLETED,
        ).scalar()

    @staticmethod
    def find_deferred(limit: Optional[int] = None) -> List[WebhookEvent]:
        query = WebhookEvent.query.filter(
            WebhookEvent.status == EventStatus.DEFERRED
        ).order_by(WebhookEvent.priority.asc(), WebhookEvent.created_at.asc())
        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def find_stuck(cutoff: datetime) -> List[WebhookEvent]:
        """Events left in processing since before cutoff."""
        return WebhookEvent.query.filter(
            WebhookEvent.status == EventStatus.PROCESSING,
            WebhookEvent.updated_at < cutoff,
        ).order_by(WebhookEvent.updated_at.asc()).all()

    @staticmethod
    def find_deferred_before(cutoff: datetime) -> List[WebhookEvent]:
        """Deferred events received before cutoff."""
        return WebhookEvent.query.filter(
            WebhookEvent.status == EventStatus.DEFERRED,
            WebhookEvent.created_at < cutoff,
        ).order_by(WebhookEvent.created_at.asc()).all()

    # ------------------------------------------------------------------
    # Operational surface
    # ------------------------------------------------------------------

    @staticmethod
    def get_stats() -> dict:
        """Counts per status plus the age of the oldest pending event."""
        rows = db.session.query(
            WebhookEvent.status, func.count(WebhookEvent.id)
        ).group_by(WebhookEvent.status).all()

        stats = {status.value: 0 for status in EventStatus}
        for status, count in rows:
            stats[status.value] = count
        stats["total"] = sum(stats[status.value] for status in EventStatus)

        stats["oldest_pending"] = format_datetime_iso(EventStore.oldest_pending_at())
        return stats

    @staticmethod
    def oldest_pending_at() -> Optional[datetime]:
        return db.session.query(func.min(WebhookEvent.created_at)).filter(
            WebhookEvent.status == EventStatus.PENDING
        ).scalar()

    @staticmethod
    def get_recent_activity(limit: int = 50) -> List[WebhookEvent]:
        """Most recently touched events, newest first."""
        limit = max(1, min(int(limit), MAX_RECENT_ACTIVITY))
        return WebhookEvent.query.order_by(
            WebhookEvent.updated_at.desc(), WebhookEvent.id.desc()
        ).limit(limit).all()

    @staticmethod
    def retry_failed(ids: Optional[Iterable[int]] = None, now: Optional[datetime] = None) -> int:
        """
        Reset failed events to pending with attempts = 0.

        Args:
            ids: Restrict the reset to these event ids. None resets every failed event.

        Returns:
            Number of events reset
        """
        now = now or utcnow()
        query = WebhookEvent.query.filter(WebhookEvent.status == EventStatus.FAILED)
        if ids is not None:
            ids = [int(i) for i in ids]
            if not ids:
                return 0
            query = query.filter(WebhookEvent.id.in_(ids))

        count = query.update({
            WebhookEvent.status: EventStatus.PENDING,
            WebhookEvent.attempts: 0,
            WebhookEvent.next_attempt_at: None,
            WebhookEvent.error_message: None,
            WebhookEvent.processed_at: None,
            WebhookEvent.updated_at: now,
        }, synchronize_session=False)
        db.session.commit()

        logger.info("Failed events reset for retry", count=count, ids=ids)
        return count

    @staticmethod
    def requeue(event_id: int, now: Optional[datetime] = None) -> bool:
        """
        Put a failed, deferred or waiting event back at the head of the queue.

        Completed events are never requeued; processing events belong to a
        running dispatch.
        """
        now = now or utcnow()
        requeued = EventStore._transition(
            event_id,
            [EventStatus.FAILED, EventStatus.DEFERRED, EventStatus.PENDING],
            {
                WebhookEvent.status: EventStatus.PENDING,
                WebhookEvent.attempts: 0,
                WebhookEvent.next_attempt_at: None,
                WebhookEvent.error_message: None,
                WebhookEvent.processed_at: None,
                WebhookEvent.updated_at: now,
            },
        )
        db.session.commit()
        return requeued

    @staticmethod
    def purge(status: EventStatus, cutoff: datetime) -> int:
        """Delete terminal events of the given status last touched before cutoff."""
        if status not in (EventStatus.COMPLETED, EventStatus.FAILED):
            raise ValueError(f"Only terminal events can be purged, not {status.value}")

        count = WebhookEvent.query.filter(
            WebhookEvent.status == status,
            WebhookEvent.updated_at < cutoff,
        ).delete(synchronize_session=False)
        db.session.commit()
        return count
