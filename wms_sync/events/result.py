"""Explicit outcomes returned by the queue instead of mixed return values."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class DispatchOutcome(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"              # prerequisites unmet, event deferred
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"                # terminal
    NOOP = "noop"                    # event was not pending (claimed elsewhere)


class ErrorKind(Enum):
    NO_HANDLER = "no_handler"
    HANDLER_ERROR = "handler_error"
    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"
    STUCK = "stuck"
    PREREQUISITE_TIMEOUT = "prerequisite_timeout"


@dataclass(frozen=True)
class QueueError:
    kind: ErrorKind
    message: str

    def to_dict(self):
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class DispatchResult:
    event_id: int
    outcome: DispatchOutcome
    error: Optional[QueueError] = None

    @property
    def ok(self) -> bool:
        return self.outcome == DispatchOutcome.COMPLETED

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "outcome": self.outcome.value,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class BatchSummary:
    """Aggregate counts for one periodic queue pass."""
    processed: int = 0
    completed: int = 0
    failed: int = 0
    deferred: int = 0
    retried: int = 0
    noop: int = 0
    promoted: int = 0
    reset_stuck: int = 0
    skipped_reason: Optional[str] = None
    results: list = field(default_factory=list, repr=False)

    def record(self, result: DispatchResult):
        self.results.append(result)
        self.processed += 1
        if result.outcome == DispatchOutcome.COMPLETED:
            self.completed += 1
        elif result.outcome == DispatchOutcome.FAILED:
            self.failed += 1
        elif result.outcome == DispatchOutcome.SKIPPED:
            self.deferred += 1
        elif result.outcome == DispatchOutcome.RETRY_SCHEDULED:
            self.retried += 1
        else:
            self.noop += 1

    def to_dict(self):
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "deferred": self.deferred,
            "retried": self.retried,
            "noop": self.noop,
            "promoted": self.promoted,
            "reset_stuck": self.reset_stuck,
            "skipped_reason": self.skipped_reason,
        }
