"""
Notification dispatch boundary.

WHAT: Hands committed domain events to the notification collaborator
WHY: Delivery (email, push, in-app) is another subsystem; a slow or failing
     sink must never hold a lock or roll back a committed transition
HOW: Events are dispatched only after the unit of work commits, on a small
     thread pool (or inline when workers=0); sink errors are logged
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Protocol

from ..models.domain import NotificationEvent
from ..utils.logger import get_logger

logger = get_logger(__name__)


class Notifications(Protocol):
    """Fire-and-forget event sink."""

    def emit(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier:
    """Default sink: writes each event to the application log."""

    def emit(self, event: NotificationEvent) -> None:
        target = f"transaction={event.transaction_id}" if event.transaction_id else f"offer={event.offer_id}"
        logger.info(f"Notify user {event.recipient_id}: {event.type} ({target})")


class RecordingNotifier:
    """Keeps every event in memory; used by tests and local tooling."""

    def __init__(self):
        self.events: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class NotificationDispatcher:
    """
    Post-commit fan-out to a Notifications sink.

    Delivery is best effort and at-least-once from the sink's point of view:
    an event is handed over once per committed transition and failures are
    only logged.
    """

    def __init__(self, sink: Notifications, workers: int = 0):
        self.sink = sink
        self._executor: Optional[ThreadPoolExecutor] = None
        if workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")

    def dispatch(self, events: Iterable[NotificationEvent]) -> None:
        """Hand events to the sink without waiting for delivery."""
        for event in events:
            if self._executor is not None:
                self._executor.submit(self._deliver, event)
            else:
                self._deliver(event)

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            self.sink.emit(event)
        except Exception as e:
            logger.error(
                f"Notification {event.type} to user {event.recipient_id} failed: {e}",
                exc_info=True
            )

    def shutdown(self, wait: bool = True) -> None:
        """Drain queued deliveries (on application shutdown)."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
