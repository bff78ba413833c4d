"""Retry, cancellation and housekeeping operations.

Every method validates against the state machine first and then writes
with a compare-and-swap, so a concurrent change between the read and the
write surfaces as InvalidTransition instead of being overwritten. Retries
are always requested explicitly; nothing here schedules delayed work.
"""

import logging

from .errors import InvalidTransition, NotFound, QueueError
from .queue_store import QueueStore
from .schemas import BulkOutcome, EntryFailure, ProcessingPhase, QueueEntryRecord, QueueStatus
from .state_machine import QueueEvent, can_retry, check_retry, is_terminal, next_status

logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, store: QueueStore):
        self.store: QueueStore = store

    def _require(self, entry_id: str, owner_id: str | None) -> QueueEntryRecord:
        entry = self.store.get_entry(entry_id, owner_id)
        if entry is None:
            raise NotFound(entry_id)
        return entry

    def _lost_race(self, entry_id: str, owner_id: str | None, event: str) -> InvalidTransition:
        current = self._require(entry_id, owner_id)
        return InvalidTransition(entry_id, current.status, event)

    def retry(self, entry_id: str, owner_id: str | None) -> QueueEntryRecord:
        """Move a failed entry to retrying and count the new attempt.

        Raises:
            NotFound: Entry missing or owned by someone else
            InvalidTransition: Entry is not failed
            AttemptsExhausted: No attempts left; the entry is left unchanged
        """
        entry = self._require(entry_id, owner_id)
        check_retry(entry)

        updated = self.store.update_entry(
            entry_id,
            {
                "status": QueueStatus.retrying,
                "attempt_count": entry.attempt_count + 1,
                "error_message": None,
                "processing_phase": ProcessingPhase.pending,
                "progress_percentage": 0,
                "processing_started_at": None,
                "processing_completed_at": None,
                "processing_time_ms": None,
            },
            expected_status=QueueStatus.failed,
            expected_version=entry.version,
            owner_id=owner_id,
        )
        if updated is None:
            raise self._lost_race(entry_id, owner_id, QueueEvent.retry.value)

        logger.info(
            "Retrying %s (attempt %d/%d)", entry_id, updated.attempt_count, updated.max_attempts
        )
        return updated

    def retry_all_failed(self, owner_id: str | None) -> BulkOutcome:
        """Retry every failed entry that still has attempts left.

        Args:
            owner_id: Owner scope; None retries across all owners (operator reset)

        Returns:
            Retried ids and per-entry failures; one failure never stops the rest
        """
        outcome = BulkOutcome()
        for entry in self.store.list_entries(owner_id, QueueStatus.failed):
            if not can_retry(entry):
                continue
            try:
                _ = self.retry(entry.entry_id, owner_id)
            except QueueError as e:
                outcome.failures.append(
                    EntryFailure(entry_id=entry.entry_id, error_code=e.error_code, message=str(e))
                )
            else:
                outcome.succeeded.append(entry.entry_id)
        return outcome

    def cancel(self, entry_id: str, owner_id: str | None) -> QueueEntryRecord:
        """Remove a queued entry.

        Returns:
            The entry as it was before removal

        Raises:
            NotFound: Entry missing or owned by someone else
            InvalidTransition: Entry is not queued
        """
        entry = self._require(entry_id, owner_id)
        _ = next_status(entry.status, QueueEvent.cancel, entry_id=entry_id)

        deleted = self.store.delete_entry(
            entry_id, expected_status=QueueStatus.queued, owner_id=owner_id
        )
        if deleted is None:
            raise self._lost_race(entry_id, owner_id, QueueEvent.cancel.value)

        logger.info("Cancelled %s", entry_id)
        return deleted

    def clear_completed(self, owner_id: str | None) -> BulkOutcome:
        """Delete every completed entry in scope. No completed entries is a no-op."""
        outcome = BulkOutcome()
        completed = self.store.list_entries(owner_id, QueueStatus.completed)
        if not completed:
            return outcome

        ids = [entry.entry_id for entry in completed]
        deleted = {
            entry.entry_id
            for entry in self.store.delete_entries(
                ids, expected_status=QueueStatus.completed, owner_id=owner_id
            )
        }
        for entry_id in ids:
            if entry_id in deleted:
                outcome.succeeded.append(entry_id)
            else:
                outcome.failures.append(
                    EntryFailure(
                        entry_id=entry_id,
                        error_code=InvalidTransition.error_code,
                        message=f"Queue item {entry_id} changed before it could be cleared",
                    )
                )

        logger.info("Cleared %d completed entries", len(outcome.succeeded))
        return outcome

    def set_priority(self, entry_id: str, owner_id: str | None, priority: int) -> QueueEntryRecord:
        """Change priority of a non-terminal entry; attempt_count is untouched.

        Raises:
            NotFound: Entry missing or owned by someone else
            InvalidTransition: Entry is completed, or failed with no attempts left
        """
        entry = self._require(entry_id, owner_id)
        if is_terminal(entry):
            raise InvalidTransition(entry_id, entry.status, "reprioritize")

        updated = self.store.update_entry(
            entry_id,
            {"priority": priority},
            expected_status=entry.status,
            owner_id=owner_id,
        )
        if updated is None:
            raise self._lost_race(entry_id, owner_id, "reprioritize")
        return updated
