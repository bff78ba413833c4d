"""Client-side projection of the queue.

QueueMirror keeps a local copy of one owner's entries: an ordered initial
fetch, then insert/update/delete deltas from the change bus. The derived
views are plain functions of the current snapshot and are recomputed on
every read.
"""

import logging
import threading
from collections.abc import Callable, Iterable

from .change_bus import ChangeBus
from .config import Config
from .queue_store import QueueStore
from .schemas import ChangeKind, QueueChange, QueueEntryRecord, QueueStats, QueueStatus

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Derived views
# -------------------------------------------------------------------------


def sort_entries(entries: Iterable[QueueEntryRecord]) -> list[QueueEntryRecord]:
    """Order by priority desc, then enqueue time, then insertion sequence."""
    return sorted(entries, key=lambda e: (-e.priority, e.created_at, e.seq))


def compute_stats(entries: Iterable[QueueEntryRecord]) -> QueueStats:
    counts = {status: 0 for status in QueueStatus}
    total = 0
    for entry in entries:
        counts[entry.status] += 1
        total += 1
    return QueueStats(total=total, **{status.value: n for status, n in counts.items()})


def filter_by_status(
    entries: Iterable[QueueEntryRecord], status: QueueStatus
) -> list[QueueEntryRecord]:
    return [entry for entry in entries if entry.status is status]


def filter_high_priority(
    entries: Iterable[QueueEntryRecord], threshold: int = Config.HIGH_PRIORITY_THRESHOLD
) -> list[QueueEntryRecord]:
    return [entry for entry in entries if entry.priority >= threshold]


def average_processing_time(entries: Iterable[QueueEntryRecord]) -> int:
    """Mean processing_time_ms over completed entries, rounded; 0 when none."""
    times = [
        entry.processing_time_ms
        for entry in entries
        if entry.status is QueueStatus.completed and entry.processing_time_ms is not None
    ]
    if not times:
        return 0
    return round(sum(times) / len(times))


# -------------------------------------------------------------------------
# Mirror
# -------------------------------------------------------------------------


class QueueMirror:
    """Local, change-driven copy of one owner's queue."""

    def __init__(
        self,
        store: QueueStore,
        bus: ChangeBus,
        owner_id: str,
        *,
        high_priority_threshold: int = Config.HIGH_PRIORITY_THRESHOLD,
    ):
        self.store: QueueStore = store
        self.bus: ChangeBus = bus
        self.owner_id: str = owner_id
        self.high_priority_threshold: int = high_priority_threshold

        self._entries: dict[str, QueueEntryRecord] = {}
        self._lock: threading.Lock = threading.Lock()
        self._unsubscribe: Callable[[], None] | None = None
        self._listeners: list[Callable[[QueueChange], None]] = []
        # Last change per entry seen while a refresh is fetching
        self._refreshing: int = 0
        self._missed: dict[str, QueueChange] = {}

    def start(self) -> None:
        """Subscribe to changes, then load the initial snapshot.

        Subscribing first means no change committed during the fetch is
        missed; deltas already reflected in the snapshot re-apply harmlessly.
        """
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self.apply)
        self.refresh()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def refresh(self) -> None:
        """Replace the local copy with a fresh fetch.

        Changes applied while the fetch runs are replayed over its result,
        so an entry deleted mid-fetch does not come back from the older
        snapshot.
        """
        with self._lock:
            self._refreshing += 1
        try:
            fetched = {entry.entry_id: entry for entry in self.store.list_entries(self.owner_id)}
            with self._lock:
                self._entries = self._merge(fetched)
        finally:
            with self._lock:
                self._refreshing -= 1
                if not self._refreshing:
                    self._missed.clear()

    def _merge(self, fetched: dict[str, QueueEntryRecord]) -> dict[str, QueueEntryRecord]:
        for entry_id, known in self._entries.items():
            if entry_id in fetched and known.version > fetched[entry_id].version:
                fetched[entry_id] = known
        for entry_id, change in self._missed.items():
            if change.kind is ChangeKind.delete:
                _ = fetched.pop(entry_id, None)
                continue
            current = fetched.get(entry_id)
            if current is None or change.entry.version > current.version:
                fetched[entry_id] = change.entry
        return fetched

    def on_change(self, listener: Callable[[QueueChange], None]) -> Callable[[], None]:
        """Register a listener called after each applied change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def apply(self, change: QueueChange) -> None:
        entry = change.entry
        if entry.owner_id != self.owner_id:
            return

        with self._lock:
            if self._refreshing:
                self._missed[entry.entry_id] = change
            if change.kind is ChangeKind.delete:
                _ = self._entries.pop(entry.entry_id, None)
            else:
                known = self._entries.get(entry.entry_id)
                # Late deliveries of an older row image are ignored
                if known is not None and known.version > entry.version:
                    return
                self._entries[entry.entry_id] = entry

        for listener in list(self._listeners):
            listener(change)

    # Views ------------------------------------------------------------------

    @property
    def entries(self) -> list[QueueEntryRecord]:
        with self._lock:
            snapshot = list(self._entries.values())
        return sort_entries(snapshot)

    def stats(self) -> QueueStats:
        return compute_stats(self.entries)

    def items_by_status(self, status: QueueStatus) -> list[QueueEntryRecord]:
        return filter_by_status(self.entries, status)

    def high_priority_items(self) -> list[QueueEntryRecord]:
        return filter_high_priority(self.entries, self.high_priority_threshold)

    def average_processing_time(self) -> int:
        return average_processing_time(self.entries)
