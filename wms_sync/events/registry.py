from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from wms_sync.events.types import EventType
from wms_sync.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HandlerContext:
    """Queue metadata handed to a handler next to the payload."""
    event_id: int
    event_type: EventType
    entity_key: str
    delivery_id: str
    attempt: int


Handler = Callable[[Dict[str, Any], HandlerContext], None]


class HandlerRegistry:
    """
    Maps event types to the function that applies them to local state.

    Handlers are called as ``handler(payload, context)``. They run inside a
    database savepoint owned by the dispatcher and must not commit or roll
    back the session themselves. Raise ``HandlerError`` (or any exception)
    for a retryable failure and ``PermanentHandlerError`` for bad data.

    The registry is frozen once the app has started; registering after that
    raises ``RuntimeError``.
    """

    def __init__(self):
        self._handlers: Dict[EventType, Handler] = {}
        self._frozen = False

    def register(self, event_type: EventType, handler: Handler) -> None:
        if self._frozen:
            raise RuntimeError(f"Handler registry is frozen; cannot register {event_type}")
        if event_type in self._handlers:
            logger.warning("Replacing handler", event_type=str(event_type))
        self._handlers[event_type] = handler

    def handles(self, *event_types: EventType):
        """Decorator form of ``register`` for one or more event types."""
        def decorator(fn: Handler) -> Handler:
            for event_type in event_types:
                self.register(event_type, fn)
            return fn
        return decorator

    def get(self, event_type: EventType) -> Optional[Handler]:
        return self._handlers.get(event_type)

    def freeze(self) -> "HandlerRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def event_types(self):
        return sorted(self._handlers, key=str)

    def __contains__(self, event_type):
        return event_type in self._handlers

    def __len__(self):
        return len(self._handlers)
