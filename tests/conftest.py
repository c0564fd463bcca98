"""
Shared fixtures: a Flask app on in-memory SQLite with tables created per test,
plus small factories for envelopes and stored events.
"""
import pytest

from wms_sync import create_app
from wms_sync.config import TestingConfig
from wms_sync.events.envelope import InboundEnvelope
from wms_sync.events.types import EventType
from wms_sync.models import db, WebhookEvent
from wms_sync.services.event_store import EventStore


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def make_envelope():
    """Build an InboundEnvelope from a topic string."""
    def _make(delivery_id, topic, entity_key, body=None, entity_id=None):
        event_type = EventType.from_topic(topic)
        return InboundEnvelope(
            delivery_id=delivery_id,
            event_type=event_type,
            entity_key=entity_key,
            payload={
                "group": event_type.group.value,
                "action": event_type.action,
                "entityId": entity_id if entity_id is not None else entity_key,
                "body": body or {},
            },
        )
    return _make


@pytest.fixture
def make_event(app, make_envelope):
    """Store a pending event directly (bypassing dedup) and return its id."""
    def _make(delivery_id, topic, entity_key, body=None, now=None):
        event = EventStore.create(make_envelope(delivery_id, topic, entity_key, body), now=now)
        db.session.commit()
        return event.id
    return _make


@pytest.fixture
def set_event():
    """Force columns on a stored event, e.g. to simulate an old or stuck row."""
    def _set(event_id, **values):
        WebhookEvent.query.filter_by(id=event_id).update(values, synchronize_session=False)
        db.session.commit()
    return _set
