"""In-process publish/subscribe channel for queue changes."""

import logging
import threading
from collections.abc import Callable

from .schemas import QueueChange

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[QueueChange], None]


class ChangeBus:
    """Fan-out of QueueChange events to subscribers.

    Callbacks run synchronously on the publishing thread, in subscription
    order. A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[ChangeCallback] = []
        self._lock: threading.Lock = threading.Lock()

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, change: QueueChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(change)
            except Exception:
                logger.exception(
                    "Change subscriber failed for %s %s", change.kind.value, change.entry.entry_id
                )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
