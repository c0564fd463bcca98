from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_

from wms_sync.datetime_utils import utcnow
from wms_sync.models import WebhookEvent, EventStatus


class PriorityScheduler:
    """Orders the ready subset of the queue for a periodic pass."""

    @staticmethod
    def select_batch(max_size: int, now: Optional[datetime] = None) -> List[WebhookEvent]:
        """
        Pending events that are due, most urgent first.

        Ordered by (priority ASC, created_at ASC, id ASC), capped at max_size.
        Deferred events are promoted to pending by the queue runner before
        selection, so they show up here once their prerequisites are met.
        """
        if max_size <= 0:
            return []

        now = now or utcnow()
        return WebhookEvent.query.filter(
            WebhookEvent.status == EventStatus.PENDING,
            or_(WebhookEvent.next_attempt_at.is_(None), WebhookEvent.next_attempt_at <= now),
        ).order_by(
            WebhookEvent.priority.asc(),
            WebhookEvent.created_at.asc(),
            WebhookEvent.id.asc(),
        ).limit(max_size).all()
