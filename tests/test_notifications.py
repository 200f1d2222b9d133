from pulsewatch.models.event_models import EventType, PulseEvent
from pulsewatch.orchestrator.notifications import NotificationHub, emit


def test_every_subscriber_receives_each_event():
    hub = NotificationHub()
    first, second = [], []
    hub.subscribe(first.append)
    hub.subscribe(second.append)

    emit(hub, EventType.PULSE_CREATED, "abc", "pending")

    assert [e.slug for e in first] == ["abc"]
    assert [e.type for e in second] == [EventType.PULSE_CREATED]
    assert hub.subscriber_count == 2


def test_unsubscribe_stops_delivery():
    hub = NotificationHub()
    received = []
    unsubscribe = hub.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    hub.publish(PulseEvent(type=EventType.PULSE_TIMED_OUT, slug="abc"))

    assert received == []
    assert hub.subscriber_count == 0


def test_failing_subscriber_does_not_starve_the_rest():
    hub = NotificationHub()
    received = []

    def broken(event):
        raise ConnectionResetError("gone")

    hub.subscribe(broken)
    hub.subscribe(received.append)

    emit(hub, EventType.HEARTBEAT_RECEIVED, "abc", "in_progress", slot_id=7)

    assert len(received) == 1
    assert received[0].slot_id == 7


def test_emit_never_raises_when_the_hub_itself_fails():
    class BrokenHub(NotificationHub):
        def publish(self, event):
            raise RuntimeError("bus down")

    emit(BrokenHub(), EventType.PULSE_COMPLETED, "abc", "completed")
