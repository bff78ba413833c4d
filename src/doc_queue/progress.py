"""Bounded polling of an entry's processing phase."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Final

from .config import Config
from .queue_store import QueueStore
from .schemas import ProcessingPhase, QueueEntryRecord, QueueStatus

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL: Final[float] = 1.0

_FINISHED_STATUSES = frozenset({QueueStatus.completed, QueueStatus.failed})


class ProgressMonitor:
    """Watches an entry's phase/progress without touching the entry.

    Giving up after ``max_checks`` only stops observation; the pipeline run
    keeps going on its own.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        interval: float = Config.PROGRESS_POLL_INTERVAL,
        max_checks: int = Config.PROGRESS_MAX_CHECKS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store: QueueStore = store
        self.interval: float = max(MIN_POLL_INTERVAL, interval)
        self.max_checks: int = max_checks
        self._sleep: Callable[[float], Awaitable[None]] = sleep

    @staticmethod
    def is_finished(entry: QueueEntryRecord) -> bool:
        return (
            entry.status in _FINISHED_STATUSES
            or entry.processing_phase is ProcessingPhase.completed
            or entry.progress_percentage >= 100
        )

    async def watch(
        self,
        entry_id: str,
        *,
        owner_id: str | None = None,
        on_update: Callable[[QueueEntryRecord], None] | None = None,
    ) -> QueueEntryRecord | None:
        """Poll until the entry finishes, disappears, or checks run out.

        Args:
            entry_id: Entry to watch
            owner_id: Restrict the lookup to this owner
            on_update: Called when the observed phase or progress changes

        Returns:
            The last observed entry, or None if it was never found
        """
        last: QueueEntryRecord | None = None

        for check in range(self.max_checks):
            entry = self.store.get_entry(entry_id, owner_id)
            if entry is None:
                logger.debug("Stopped watching %s: entry not found", entry_id)
                return last

            changed = last is None or (
                entry.processing_phase,
                entry.progress_percentage,
                entry.status,
            ) != (last.processing_phase, last.progress_percentage, last.status)
            last = entry
            if changed and on_update is not None:
                on_update(entry)

            if self.is_finished(entry):
                return entry
            if check + 1 < self.max_checks:
                await self._sleep(self.interval)

        logger.info("Gave up watching %s after %d checks", entry_id, self.max_checks)
        return last
