"""
Reconciliation poller: the backstop for notifications that never arrived.

For each category the WMS is asked for items changed since the last
successful run. Items that a completed event already reflects are skipped;
the rest are admitted as synthetic events through the normal ingestion path
with a deterministic delivery id (``reconcile:<category>:<entity>:<version>``),
so re-polling the same item version never queues it twice.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from wms_sync.datetime_utils import utcnow, parse_datetime
from wms_sync.events.envelope import InboundEnvelope, STOCK_KEY_FIELDS
from wms_sync.events.types import EventGroup, EventType
from wms_sync.logging_config import get_logger, QueueRunContext
from wms_sync.models import db, EventSource, ReconciliationCursor
from wms_sync.services.event_store import EventStore
from wms_sync.services.ingestion import IngestionService
from wms_sync.services.queue_runner import ProcessingOptions

logger = get_logger(__name__)


class ReconciliationCategory(Enum):
    STOCK = "stock"
    ORDERS = "orders"
    SHIPMENTS = "shipments"
    INBOUNDS = "inbounds"


class ReconciliationSource(Protocol):
    def fetch_recent(self, category: ReconciliationCategory, since: datetime) -> List[Dict[str, Any]]:
        ...


@dataclass(frozen=True)
class CategoryMapping:
    group: EventGroup
    key_fields: Tuple[str, ...]
    lookback: timedelta
    # Synthesize "<group>.created" for entities with no completed event yet
    lifecycle: bool = False
    default_action: str = "updated"


CATEGORY_MAPPINGS: Dict[ReconciliationCategory, CategoryMapping] = {
    ReconciliationCategory.STOCK: CategoryMapping(
        group=EventGroup.STOCK,
        key_fields=(*STOCK_KEY_FIELDS, "id"),
        lookback=timedelta(hours=1),
    ),
    ReconciliationCategory.ORDERS: CategoryMapping(
        group=EventGroup.ORDER,
        key_fields=("external_reference", "reference", "id"),
        lookback=timedelta(days=1),
        lifecycle=True,
    ),
    ReconciliationCategory.SHIPMENTS: CategoryMapping(
        group=EventGroup.SHIPMENT,
        key_fields=("external_reference", "reference", "id"),
        lookback=timedelta(days=1),
        lifecycle=True,
    ),
    ReconciliationCategory.INBOUNDS: CategoryMapping(
        group=EventGroup.INBOUND,
        key_fields=("id", "reference"),
        lookback=timedelta(days=1),
    ),
}

VERSION_FIELDS = ("updated_at", "modified_at", "modifiedAt", "updatedAt")
UNVERSIONED = "unversioned"


@dataclass
class ReconciliationSummary:
    category: str
    fetched: int = 0
    admitted: int = 0
    reflected: int = 0
    duplicates: int = 0
    invalid: int = 0
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    event_ids: List[int] = field(default_factory=list, repr=False)

    def to_dict(self):
        return {
            "category": self.category,
            "fetched": self.fetched,
            "admitted": self.admitted,
            "reflected": self.reflected,
            "duplicates": self.duplicates,
            "invalid": self.invalid,
            "error": self.error,
            "skipped_reason": self.skipped_reason,
        }


def _first(item: Dict[str, Any], fields: Tuple[str, ...]):
    for name in fields:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


class ReconciliationPoller:
    """Polls a ReconciliationSource and admits corrective events."""

    def __init__(self, source_factory: Callable[[], ReconciliationSource], ingestion: IngestionService):
        # Resolved per run so missing WMS credentials only fail reconciliation
        self.source_factory = source_factory
        self.ingestion = ingestion

    def run(self, category: ReconciliationCategory, options: ProcessingOptions,
            now: Optional[datetime] = None) -> ReconciliationSummary:
        summary = ReconciliationSummary(category=category.value)
        if not options.automation_enabled:
            summary.skipped_reason = "automation_disabled"
            return summary

        now = now or utcnow()
        mapping = CATEGORY_MAPPINGS[category]
        cursor = self._get_cursor(category)
        since = cursor.last_run_at or (now - mapping.lookback)

        with QueueRunContext(f"reconcile_{category.value}"):
            try:
                items = self.source_factory().fetch_recent(category, since) or []
            except Exception as e:
                summary.error = str(e)
                cursor.last_error = str(e)[:2000]
                db.session.commit()
                logger.error("Reconciliation fetch failed", category=category.value, error=str(e), exc_info=True)
                return summary

            summary.fetched = len(items)
            for item in items:
                self._reconcile_item(category, mapping, item, options, now, summary)

            cursor.last_run_at = now
            cursor.last_item_count = summary.fetched
            cursor.last_error = None
            db.session.commit()

        logger.info("Reconciliation finished", **summary.to_dict())
        return summary

    def _reconcile_item(self, category, mapping, item, options, now, summary):
        if not isinstance(item, dict):
            summary.invalid += 1
            return

        entity_key = _first(item, mapping.key_fields)
        if entity_key is None:
            summary.invalid += 1
            logger.warning("Reconciliation item without entity key", category=category.value)
            return
        entity_key = str(entity_key)

        raw_version = _first(item, VERSION_FIELDS)
        version_at = parse_datetime(raw_version)

        latest = EventStore.latest_completed_at(entity_key, mapping.group)
        if latest is not None and (version_at is None or latest >= version_at):
            summary.reflected += 1
            return

        action = mapping.default_action
        if mapping.lifecycle and not EventStore.has_completed(entity_key, EventType(mapping.group, "created")):
            action = "created"
        event_type = EventType(mapping.group, action)

        version = str(raw_version) if raw_version is not None else UNVERSIONED
        envelope = InboundEnvelope(
            delivery_id=f"reconcile:{category.value}:{entity_key}:{version}",
            event_type=event_type,
            entity_key=entity_key,
            payload={
                "group": mapping.group.value,
                "action": action,
                "entityId": item.get("id"),
                "body": item,
                "reconciled_at": now.isoformat(),
            },
        )

        result = self.ingestion.ingest(
            envelope,
            options,
            source=EventSource.RECONCILIATION,
            dispatch_immediately=False,
            now=now,
        )
        if result.accepted:
            summary.admitted += 1
            summary.event_ids.append(result.event_id)
        else:
            summary.duplicates += 1

    @staticmethod
    def _get_cursor(category: ReconciliationCategory) -> ReconciliationCursor:
        cursor = ReconciliationCursor.query.filter_by(category=category.value).first()
        if cursor is None:
            cursor = ReconciliationCursor(category=category.value, last_item_count=0)
            db.session.add(cursor)
            db.session.commit()
        return cursor
