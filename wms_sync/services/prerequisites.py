from typing import Callable, Dict, Optional, Tuple

from wms_sync.events.types import EventType, PREREQUISITE_RULES
from wms_sync.logging_config import get_logger
from wms_sync.models import WebhookEvent
from wms_sync.services.event_store import EventStore

logger = get_logger(__name__)

# Returns True if the entity already exists locally
ExistenceProbe = Callable[[str], bool]


class PrerequisiteResolver:
    """
    Decides whether an event's causal dependencies have been applied.

    A rule maps an event type to the types that must have a completed event
    for the same entity key first. An optional existence probe per type lets
    the rule be bypassed when the entity is already known locally (orders
    that were imported before webhooks were switched on). Read-only.
    """

    def __init__(self, rules: Optional[Dict[EventType, Tuple[EventType, ...]]] = None):
        self.rules = dict(PREREQUISITE_RULES if rules is None else rules)
        self._probes: Dict[EventType, ExistenceProbe] = {}

    def register_probe(self, event_type: EventType, probe: ExistenceProbe) -> None:
        self._probes[event_type] = probe

    def required_for(self, event_type: EventType) -> Tuple[EventType, ...]:
        return self.rules.get(event_type, ())

    def missing_for(self, event: WebhookEvent) -> Tuple[EventType, ...]:
        """Prerequisite types not yet completed for the event's entity."""
        event_type = event.event_type
        required = self.required_for(event_type)
        if not required:
            return ()

        probe = self._probes.get(event_type)
        if probe is not None and probe(event.entity_key):
            logger.debug(
                "Prerequisite bypassed, entity exists locally",
                event_id=event.id,
                topic=event.topic,
                entity_key=event.entity_key,
            )
            return ()

        return tuple(
            prerequisite for prerequisite in required
            if not EventStore.has_completed(event.entity_key, prerequisite)
        )

    def is_ready(self, event: WebhookEvent) -> bool:
        return not self.missing_for(event)
