"""
Signals for out-of-band alerting.

Connect a receiver to be told when an event fails terminally or the queue
health check turns unhealthy::

    from wms_sync.signals import event_failed

    @event_failed.connect
    def page_on_call(sender, event_id, error, **extra):
        ...
"""
from blinker import Namespace

_signals = Namespace()

# sender: the RetryController / QueueMaintenance; kwargs: event_id, topic, entity_key, error
event_failed = _signals.signal("event-failed")

# sender: QueueMaintenance; kwargs: health
queue_unhealthy = _signals.signal("queue-unhealthy")
