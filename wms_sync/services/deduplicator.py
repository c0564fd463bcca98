from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from wms_sync.datetime_utils import utcnow
from wms_sync.logging_config import get_logger
from wms_sync.models import db, DeliveryReceipt

logger = get_logger(__name__)


class Deduplicator:
    """Admits each delivery id once, backed by a unique delivery_receipts row."""

    @staticmethod
    def seen(delivery_id: str) -> bool:
        return db.session.query(
            DeliveryReceipt.query.filter_by(delivery_id=delivery_id).exists()
        ).scalar()

    @staticmethod
    def admit(delivery_id: str, now: Optional[datetime] = None) -> bool:
        """
        Record a delivery id and return True, or return False if it was already recorded.

        The receipt is flushed inside a savepoint but not committed, so it
        lands in the same transaction as the event row the caller stores
        next. A concurrent insert of the same id loses on the unique index.
        """
        if Deduplicator.seen(delivery_id):
            logger.debug("Duplicate delivery dropped", delivery_id=delivery_id)
            return False

        try:
            with db.session.begin_nested():
                db.session.add(DeliveryReceipt(delivery_id=delivery_id, received_at=now or utcnow()))
                db.session.flush()
        except IntegrityError:
            logger.debug("Duplicate delivery dropped (concurrent insert)", delivery_id=delivery_id)
            return False

        return True

    @staticmethod
    def purge(cutoff: datetime) -> int:
        count = DeliveryReceipt.query.filter(
            DeliveryReceipt.received_at < cutoff
        ).delete(synchronize_session=False)
        db.session.commit()
        return count
