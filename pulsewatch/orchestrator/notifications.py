"""Pulsewatch — Notification Fan-out.

Publishes pulse lifecycle events to real-time consumers. Delivery is
best-effort: a failing subscriber is logged and skipped, and nothing raised
here ever reaches the orchestration code that published the event.
"""

from typing import Callable, List

from pulsewatch.models.event_models import EventType, PulseEvent
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.notifications")

Subscriber = Callable[[PulseEvent], None]


class NotificationHub:
    """In-process fan-out to registered subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a callable that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: PulseEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    f"Subscriber failed for {event.type.value}: {e}",
                    extra={"pulse_slug": event.slug},
                )


hub = NotificationHub()


def emit(
    notifier: NotificationHub,
    event_type: EventType,
    slug: str,
    status: str = "",
    slot_id: int | None = None,
) -> None:
    """Build and publish an event, logging instead of raising on failure."""
    try:
        notifier.publish(
            PulseEvent(type=event_type, slug=slug, status=status, slot_id=slot_id)
        )
    except Exception as e:
        logger.error(
            f"Publishing {event_type.value} failed: {e}", extra={"pulse_slug": slug}
        )
