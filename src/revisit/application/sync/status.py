import logging
from collections.abc import Callable

from revisit.domain.models import SyncEvent, SyncStatus

logger = logging.getLogger(__name__)

Listener = Callable[[SyncEvent], None]


class SyncStatusChannel:
    """
    Observable sync status.

    Listeners are called synchronously, in subscription order, for every
    published event. A failing listener is logged and does not stop delivery
    to the others.
    """

    def __init__(self):
        self._listeners: list[Listener] = []
        self.status = SyncStatus.IDLE
        self.last_event: SyncEvent | None = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: SyncEvent) -> None:
        self.status = event.status
        self.last_event = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")

    def clear(self) -> None:
        self._listeners.clear()
