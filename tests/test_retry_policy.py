"""
Tests for retry scheduling, exhaustion and manual reset of failed events.
"""
from datetime import datetime, timedelta

import pytest

from wms_sync.events.errors import HandlerError
from wms_sync.events.registry import HandlerRegistry
from wms_sync.events.result import DispatchOutcome, ErrorKind, QueueError
from wms_sync.events.types import STOCK_UPDATED
from wms_sync.models import EventStatus
from wms_sync.services.dispatcher import Dispatcher
from wms_sync.services.event_store import EventStore
from wms_sync.services.prerequisites import PrerequisiteResolver
from wms_sync.services.queue_runner import QueueRunner, ProcessingOptions
from wms_sync.services.retry_policy import RetryController, format_error
from wms_sync.signals import event_failed

T0 = datetime(2025, 1, 1, 12, 0, 0)
OPTIONS = ProcessingOptions(automation_enabled=True, batch_size=20)


class TestDelays:

    def test_delay_table(self):
        controller = RetryController(max_attempts=3, intervals=[30, 120, 300, 900, 3600])
        assert controller.delay_for(1) == timedelta(seconds=30)
        assert controller.delay_for(2) == timedelta(seconds=120)
        assert controller.delay_for(5) == timedelta(seconds=3600)

    def test_last_interval_repeats(self):
        controller = RetryController(intervals=[30, 120])
        assert controller.delay_for(9) == timedelta(seconds=120)

    def test_delays_never_decrease(self):
        controller = RetryController()
        delays = [controller.delay_for(n) for n in range(1, 10)]
        assert delays == sorted(delays)

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"intervals": []}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RetryController(**kwargs)

    def test_format_error_truncates(self):
        message = format_error(HandlerError("x" * 5000))
        assert message.startswith("HandlerError: ")
        assert len(message) == 2000


class TestRetryController:

    def test_failure_schedules_retry(self, app, make_event):
        event_id = make_event("d-1", "stock.updated", "SKU-1")
        EventStore.claim(event_id, T0)

        result = RetryController().handle_failure(EventStore.get(event_id), HandlerError("boom"), T0)

        assert result.outcome == DispatchOutcome.RETRY_SCHEDULED
        event = EventStore.get(event_id)
        assert event.status == EventStatus.PENDING
        assert event.next_attempt_at == T0 + timedelta(seconds=30)

    def test_exhausted_fails_and_signals(self, app, make_event, set_event):
        event_id = make_event("d-1", "stock.updated", "SKU-1")
        set_event(event_id, status=EventStatus.PROCESSING, attempts=3)
        received = []

        def receiver(sender, **kwargs):
            received.append(kwargs)

        with event_failed.connected_to(receiver):
            result = RetryController().handle_failure(EventStore.get(event_id), HandlerError("boom"), T0)

        assert result.outcome == DispatchOutcome.FAILED
        assert result.error.kind == ErrorKind.EXHAUSTED
        assert EventStore.get(event_id).status == EventStatus.FAILED
        assert len(received) == 1
        assert received[0]["event_id"] == event_id
        assert received[0]["topic"] == "stock.updated"
        assert received[0]["error"].kind == ErrorKind.EXHAUSTED

    def test_fail_from_wrong_status_is_noop(self, app, make_event):
        event_id = make_event("d-1", "stock.updated", "SKU-1")

        result = RetryController().fail(EventStore.get(event_id), QueueError(ErrorKind.PERMANENT, "bad"), T0)

        assert result.outcome == DispatchOutcome.NOOP
        assert EventStore.get(event_id).status == EventStatus.PENDING


# ==============================================================================
# Retry lifecycles through the queue runner
# ==============================================================================

@pytest.fixture
def flaky_runner():
    """Runner whose stock handler fails a configurable number of times."""
    state = {"failures_left": 0, "calls": 0}
    registry = HandlerRegistry()

    def flaky(payload, context):
        state["calls"] += 1
        if state["failures_left"] > 0:
            state["failures_left"] -= 1
            raise HandlerError("WMS timeout")

    registry.register(STOCK_UPDATED, flaky)
    dispatcher = Dispatcher(registry, PrerequisiteResolver(), RetryController(3, [30, 120, 300, 900, 3600]))
    return QueueRunner(dispatcher), state


class TestRetryLifecycle:

    def test_transient_failures_then_success(self, app, make_event, flaky_runner):
        runner, state = flaky_runner
        state["failures_left"] = 2
        event_id = make_event("c-1", "stock.updated", "SKU-9", now=T0)

        runner.process_batch(OPTIONS, now=T0)
        event = EventStore.get(event_id)
        assert (event.status, event.attempts) == (EventStatus.PENDING, 1)
        assert event.next_attempt_at == T0 + timedelta(seconds=30)

        # Not due yet
        assert runner.process_batch(OPTIONS, now=T0 + timedelta(seconds=10)).processed == 0

        t1 = T0 + timedelta(seconds=30)
        runner.process_batch(OPTIONS, now=t1)
        event = EventStore.get(event_id)
        assert (event.status, event.attempts) == (EventStatus.PENDING, 2)
        assert event.next_attempt_at == t1 + timedelta(seconds=120)

        t2 = t1 + timedelta(seconds=120)
        summary = runner.process_batch(OPTIONS, now=t2)
        event = EventStore.get(event_id)
        assert summary.completed == 1
        assert (event.status, event.attempts) == (EventStatus.COMPLETED, 3)
        assert event.error_message is None
        assert state["calls"] == 3

    def test_persistent_failure_then_manual_retry(self, app, make_event, flaky_runner):
        runner, state = flaky_runner
        state["failures_left"] = 100
        event_id = make_event("d-1", "stock.updated", "SKU-9", now=T0)

        runner.process_batch(OPTIONS, now=T0)
        runner.process_batch(OPTIONS, now=T0 + timedelta(seconds=30))
        summary = runner.process_batch(OPTIONS, now=T0 + timedelta(seconds=150))

        event = EventStore.get(event_id)
        assert summary.failed == 1
        assert event.status == EventStatus.FAILED
        assert event.attempts == 3
        assert "WMS timeout" in event.error_message

        # Terminal: later passes leave it alone
        assert runner.process_batch(OPTIONS, now=T0 + timedelta(hours=1)).processed == 0

        assert EventStore.retry_failed([event_id]) == 1
        event = EventStore.get(event_id)
        assert (event.status, event.attempts) == (EventStatus.PENDING, 0)

        state["failures_left"] = 0
        summary = runner.process_batch(OPTIONS, now=T0 + timedelta(hours=1))
        assert summary.completed == 1
        assert EventStore.get(event_id).status == EventStatus.COMPLETED

    def test_retry_failed_without_ids_resets_all(self, app, make_event, set_event):
        ids = [make_event(f"d-{i}", "stock.updated", f"SKU-{i}") for i in range(3)]
        for event_id in ids[:2]:
            set_event(event_id, status=EventStatus.FAILED, attempts=3)

        assert EventStore.retry_failed() == 2
        assert EventStore.retry_failed([]) == 0
