"""Per-session queue service: the boundary between the queue and its UI.

Domain errors stop here. Each mutating call returns an OperationResult and
sends exactly one notification, so "nothing to do" and "rejected" are
always distinguishable for the caller.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .config import Config
from .errors import QueueError
from .notify import LoggingNotifier, NotificationKind, Notifier
from .queue_store import QueueStore
from .retry_policy import RetryPolicy
from .schemas import (
    BulkOutcome,
    OperationResult,
    QueueChange,
    QueueEntryRecord,
    QueueStats,
    QueueStatus,
)
from .sync import average_processing_time, compute_stats, filter_by_status, filter_high_priority

logger = logging.getLogger(__name__)


class QueueService:
    """Queue operations scoped to one owner.

    Construct one per session and pass it to whatever needs queue access.

    Example:
        service = QueueService(store, owner_id="user-1")
        entry = service.enqueue("report-42", priority=5)
        result = service.retry(entry.entry_id)
        if not result.success:
            print(result.error_code, result.message)
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        owner_id: str,
        policy: RetryPolicy | None = None,
        notifier: Notifier | None = None,
        high_priority_threshold: int = Config.HIGH_PRIORITY_THRESHOLD,
    ):
        self.store: QueueStore = store
        self.owner_id: str = owner_id
        self.policy: RetryPolicy = policy if policy is not None else RetryPolicy(store)
        self.notifier: Notifier = notifier if notifier is not None else LoggingNotifier()
        self.high_priority_threshold: int = high_priority_threshold

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_queue(self) -> list[QueueEntryRecord]:
        return self.store.list_entries(self.owner_id)

    def get_entry(self, entry_id: str) -> QueueEntryRecord | None:
        return self.store.get_entry(entry_id, self.owner_id)

    def get_stats(self) -> QueueStats:
        return compute_stats(self.list_queue())

    def get_items_by_status(self, status: QueueStatus) -> list[QueueEntryRecord]:
        return filter_by_status(self.list_queue(), status)

    def get_high_priority_items(self) -> list[QueueEntryRecord]:
        return filter_high_priority(self.list_queue(), self.high_priority_threshold)

    def get_average_processing_time(self) -> int:
        return average_processing_time(self.list_queue())

    def subscribe(self, callback: Callable[[QueueChange], None]) -> Callable[[], None]:
        """Receive every change to this owner's entries.

        Returns:
            Function that cancels the subscription
        """

        def scoped(change: QueueChange) -> None:
            if change.entry.owner_id == self.owner_id:
                callback(change)

        return self.store.change_bus.subscribe(scoped)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        document_id: str,
        *,
        priority: int = Config.DEFAULT_PRIORITY,
        max_attempts: int = Config.DEFAULT_MAX_ATTEMPTS,
        metadata: Mapping[str, Any] | None = None,
    ) -> QueueEntryRecord:
        return self.store.add_entry(
            self.owner_id,
            document_id,
            priority=priority,
            max_attempts=max_attempts,
            metadata=metadata,
        )

    def _report(
        self, success: bool, title: str, message: str, **fields: Any
    ) -> OperationResult:
        kind = NotificationKind.success if success else NotificationKind.destructive
        if success and fields.get("failures"):
            kind = NotificationKind.default
        self.notifier.notify(title, message, kind)
        return OperationResult(success=success, title=title, message=message, **fields)

    def _rejected(self, title: str, error: QueueError) -> OperationResult:
        logger.info("%s: %s", title, error)
        return self._report(False, title, str(error), error_code=error.error_code)

    def retry(self, entry_id: str) -> OperationResult:
        try:
            entry = self.policy.retry(entry_id, self.owner_id)
        except QueueError as e:
            return self._rejected("Retry Failed", e)
        return self._report(
            True,
            "Retry Initiated",
            "Document processing has been queued for retry.",
            affected=[entry_id],
            entry=entry,
        )

    def retry_all_failed(self) -> OperationResult:
        outcome = self.policy.retry_all_failed(self.owner_id)
        if outcome.is_noop:
            return self._report(
                True, "No Items to Retry", "There are no failed items eligible for retry."
            )
        return self._bulk_report(
            outcome,
            title="Bulk Retry Initiated",
            message=f"{len(outcome.succeeded)} items queued for retry.",
            failure_title="Bulk Retry Failed",
        )

    def cancel(self, entry_id: str) -> OperationResult:
        try:
            entry = self.policy.cancel(entry_id, self.owner_id)
        except QueueError as e:
            return self._rejected("Cancellation Failed", e)
        return self._report(
            True, "Item Cancelled", "Queue item has been removed.", affected=[entry_id], entry=entry
        )

    def clear_completed(self) -> OperationResult:
        outcome = self.policy.clear_completed(self.owner_id)
        if outcome.is_noop:
            return self._report(
                True, "No Completed Items", "There are no completed items to clear."
            )
        return self._bulk_report(
            outcome,
            title="Completed Items Cleared",
            message=f"{len(outcome.succeeded)} completed items removed.",
            failure_title="Clear Failed",
        )

    def set_priority(self, entry_id: str, priority: int) -> OperationResult:
        try:
            entry = self.policy.set_priority(entry_id, self.owner_id, priority)
        except QueueError as e:
            return self._rejected("Update Failed", e)
        return self._report(
            True,
            "Priority Updated",
            f"Queue item priority set to {priority}.",
            affected=[entry_id],
            entry=entry,
        )

    def _bulk_report(
        self, outcome: BulkOutcome, *, title: str, message: str, failure_title: str
    ) -> OperationResult:
        if not outcome.succeeded:
            return self._report(
                False,
                failure_title,
                f"{len(outcome.failures)} items could not be processed.",
                error_code=outcome.failures[0].error_code,
                failures=outcome.failures,
            )
        if outcome.failures:
            message = f"{message} {len(outcome.failures)} items could not be processed."
        return self._report(
            True, title, message, affected=outcome.succeeded, failures=outcome.failures
        )
