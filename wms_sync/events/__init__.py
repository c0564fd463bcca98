from wms_sync.events.types import EventGroup, EventType, priority_for
from wms_sync.events.errors import (
    WebhookError,
    InvalidSignatureError,
    MalformedEventError,
    HandlerError,
    PermanentHandlerError,
)
from wms_sync.events.result import DispatchOutcome, DispatchResult, ErrorKind, QueueError, BatchSummary
from wms_sync.events.registry import HandlerRegistry, HandlerContext
from wms_sync.events.envelope import InboundEnvelope
