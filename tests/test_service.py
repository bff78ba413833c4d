"""Tests for QueueService."""

from __future__ import annotations

import pytest

from conftest import OTHER_OWNER, OWNER, failing_provider, lose_delete_race, lose_update_race
from doc_queue import PipelineOrchestrator, QueueService, QueueStore, StageRegistry
from doc_queue.notify import NotificationKind, RecordingNotifier
from doc_queue.schemas import QueueChange, QueueStatus
from doc_queue.stages import Stage


def complete_with(store: QueueStore, entry_id: str, processing_time_ms: int) -> None:
    claimed = store.claim(entry_id)
    assert claimed is not None
    done = store.update_entry(
        entry_id,
        {"status": QueueStatus.completed, "processing_time_ms": processing_time_ms},
        expected_status=QueueStatus.processing,
    )
    assert done is not None


def fail(store: QueueStore, entry_id: str) -> None:
    claimed = store.claim(entry_id)
    assert claimed is not None
    failed = store.update_entry(
        entry_id,
        {"status": QueueStatus.failed, "error_message": "Textract API error: 500"},
        expected_status=QueueStatus.processing,
    )
    assert failed is not None


# ============================================================================
# Scenario Tests
# ============================================================================


@pytest.mark.asyncio
async def test_retry_until_exhausted(
    store: QueueStore, service: QueueService, notifier: RecordingNotifier
) -> None:
    """Test three failed attempts exhaust the budget and a fourth retry is refused."""
    registry = StageRegistry({Stage.ocr: failing_provider()})
    orchestrator = PipelineOrchestrator(store, registry, notifier=RecordingNotifier())
    entry = service.enqueue("report-1", priority=1, max_attempts=3)

    first = await orchestrator.process_next()
    assert first is not None
    assert first.status is QueueStatus.failed
    assert first.attempt_count == 1
    assert first.error_message == "ocr stage failed: Textract API error: 500"

    result = service.retry(entry.entry_id)
    assert result.success
    assert result.title == "Retry Initiated"
    assert result.entry is not None
    assert result.entry.status is QueueStatus.retrying
    assert result.entry.attempt_count == 2
    assert result.entry.error_message is None

    second = await orchestrator.process_next()
    assert second is not None
    assert second.status is QueueStatus.failed
    assert second.attempt_count == 2

    assert service.retry(entry.entry_id).success
    third = await orchestrator.process_next()
    assert third is not None
    assert third.status is QueueStatus.failed
    assert third.attempt_count == 3

    rejected = service.retry(entry.entry_id)

    assert not rejected.success
    assert rejected.title == "Retry Failed"
    assert rejected.error_code == "attempts_exhausted"
    assert service.get_entry(entry.entry_id) == third
    assert notifier.last is not None
    assert notifier.last.kind is NotificationKind.destructive


def test_list_queue_priority_first(service: QueueService) -> None:
    """Test the higher priority entry is listed first regardless of insertion order."""
    low = service.enqueue("report-1", priority=1)
    high = service.enqueue("report-2", priority=5)

    assert [e.entry_id for e in service.list_queue()] == [high.entry_id, low.entry_id]


def test_cancel_processing_then_queued(store: QueueStore, service: QueueService) -> None:
    """Test cancel is refused while processing and removes a queued entry."""
    running = service.enqueue("report-1")
    _ = store.claim(running.entry_id)
    waiting = service.enqueue("report-2")

    refused = service.cancel(running.entry_id)
    assert not refused.success
    assert refused.title == "Cancellation Failed"
    assert refused.error_code == "invalid_transition"

    removed = service.cancel(waiting.entry_id)
    assert removed.success
    assert removed.title == "Item Cancelled"
    assert removed.affected == [waiting.entry_id]
    assert [e.entry_id for e in service.list_queue()] == [running.entry_id]


def test_average_processing_time(store: QueueStore, service: QueueService) -> None:
    """Test the mean covers completed entries only and is 0 when there are none."""
    assert service.get_average_processing_time() == 0

    first = service.enqueue("report-1")
    complete_with(store, first.entry_id, 100)
    second = service.enqueue("report-2")
    complete_with(store, second.entry_id, 200)
    _ = service.enqueue("report-3")

    assert service.get_average_processing_time() == 150


def test_clear_completed_noop(service: QueueService, notifier: RecordingNotifier) -> None:
    """Test clearing with nothing completed succeeds and changes nothing."""
    _ = service.enqueue("report-1")
    before = service.list_queue()

    result = service.clear_completed()

    assert result.success
    assert result.title == "No Completed Items"
    assert result.affected == []
    assert service.list_queue() == before
    assert notifier.last is not None
    assert notifier.last.title == "No Completed Items"


# ============================================================================
# Operation Result Tests
# ============================================================================


def test_retry_missing_entry(service: QueueService) -> None:
    """Test retrying an unknown entry reports not_found."""
    result = service.retry("missing")

    assert not result.success
    assert result.error_code == "not_found"


def test_retry_all_failed(store: QueueStore, service: QueueService) -> None:
    """Test bulk retry reports the retried entries."""
    first = service.enqueue("report-1")
    fail(store, first.entry_id)
    second = service.enqueue("report-2")
    fail(store, second.entry_id)

    result = service.retry_all_failed()

    assert result.success
    assert result.title == "Bulk Retry Initiated"
    assert sorted(result.affected) == sorted([first.entry_id, second.entry_id])
    assert service.get_stats().retrying == 2


def test_retry_all_failed_nothing_eligible(service: QueueService) -> None:
    """Test bulk retry with no failed entries is a successful no-op."""
    result = service.retry_all_failed()

    assert result.success
    assert result.title == "No Items to Retry"


def test_clear_completed(store: QueueStore, service: QueueService) -> None:
    """Test clearing reports the removed entries."""
    done = service.enqueue("report-1")
    complete_with(store, done.entry_id, 50)

    result = service.clear_completed()

    assert result.success
    assert result.title == "Completed Items Cleared"
    assert result.affected == [done.entry_id]
    assert service.list_queue() == []


def test_retry_all_failed_partial(
    store: QueueStore,
    service: QueueService,
    notifier: RecordingNotifier,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test bulk retry still succeeds when one entry changes underneath it."""
    lost = service.enqueue("report-1")
    fail(store, lost.entry_id)
    retried = service.enqueue("report-2")
    fail(store, retried.entry_id)
    lose_update_race(monkeypatch, store, {lost.entry_id})

    result = service.retry_all_failed()

    assert result.success
    assert result.title == "Bulk Retry Initiated"
    assert result.affected == [retried.entry_id]
    assert [f.entry_id for f in result.failures] == [lost.entry_id]
    assert result.message == "1 items queued for retry. 1 items could not be processed."
    assert notifier.last is not None
    assert notifier.last.kind is NotificationKind.default


def test_retry_all_failed_every_entry_lost(
    store: QueueStore,
    service: QueueService,
    notifier: RecordingNotifier,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test bulk retry fails when no entry could be retried."""
    entry = service.enqueue("report-1")
    fail(store, entry.entry_id)
    lose_update_race(monkeypatch, store, {entry.entry_id})

    result = service.retry_all_failed()

    assert not result.success
    assert result.title == "Bulk Retry Failed"
    assert result.message == "1 items could not be processed."
    assert result.error_code == "invalid_transition"
    assert result.affected == []
    assert notifier.last is not None
    assert notifier.last.kind is NotificationKind.destructive
    assert service.get_stats().failed == 1


def test_clear_completed_every_entry_lost(
    store: QueueStore,
    service: QueueService,
    notifier: RecordingNotifier,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test clearing fails when every completed entry changed before deletion."""
    done = service.enqueue("report-1")
    complete_with(store, done.entry_id, 50)
    lose_delete_race(monkeypatch, store, {done.entry_id})

    result = service.clear_completed()

    assert not result.success
    assert result.title == "Clear Failed"
    assert result.error_code == "invalid_transition"
    assert [f.entry_id for f in result.failures] == [done.entry_id]
    assert notifier.last is not None
    assert notifier.last.kind is NotificationKind.destructive
    assert [e.entry_id for e in service.list_queue()] == [done.entry_id]


def test_set_priority(service: QueueService, notifier: RecordingNotifier) -> None:
    """Test priority updates reorder the queue."""
    first = service.enqueue("report-1", priority=1)
    second = service.enqueue("report-2", priority=2)

    result = service.set_priority(first.entry_id, 9)

    assert result.success
    assert result.title == "Priority Updated"
    assert [e.entry_id for e in service.list_queue()] == [first.entry_id, second.entry_id]
    assert notifier.last is not None
    assert notifier.last.kind is NotificationKind.success


def test_set_priority_completed_rejected(store: QueueStore, service: QueueService) -> None:
    """Test completed entries cannot be reprioritized."""
    done = service.enqueue("report-1")
    complete_with(store, done.entry_id, 10)

    result = service.set_priority(done.entry_id, 9)

    assert not result.success
    assert result.title == "Update Failed"
    assert result.error_code == "invalid_transition"


# ============================================================================
# Owner Scope Tests
# ============================================================================


def test_other_owner_invisible(store: QueueStore, service: QueueService) -> None:
    """Test another owner's entries are neither listed nor mutable."""
    theirs = store.add_entry(OTHER_OWNER, "report-1")

    assert service.list_queue() == []
    assert service.get_entry(theirs.entry_id) is None
    assert service.cancel(theirs.entry_id).error_code == "not_found"
    assert store.get_entry(theirs.entry_id) is not None


def test_subscribe_filters_owner(store: QueueStore, service: QueueService) -> None:
    """Test subscribers only see changes to the service owner's entries."""
    received: list[QueueChange] = []
    unsubscribe = service.subscribe(received.append)

    mine = service.enqueue("report-1")
    _ = store.add_entry(OTHER_OWNER, "report-2")
    unsubscribe()
    _ = service.enqueue("report-3")

    assert [c.entry.entry_id for c in received] == [mine.entry_id]


# ============================================================================
# Derived View Tests
# ============================================================================


def test_stats_and_filters(store: QueueStore, service: QueueService) -> None:
    """Test counts per status and the high priority filter."""
    urgent = service.enqueue("report-1", priority=5)
    _ = service.enqueue("report-2", priority=1)
    failed = service.enqueue("report-3", priority=3)
    fail(store, failed.entry_id)

    stats = service.get_stats()

    assert stats.total == 3
    assert stats.queued == 2
    assert stats.failed == 1
    assert stats.processing == 0
    assert [e.entry_id for e in service.get_high_priority_items()] == [
        urgent.entry_id,
        failed.entry_id,
    ]
    assert [e.entry_id for e in service.get_items_by_status(QueueStatus.failed)] == [
        failed.entry_id
    ]


def test_enqueue_defaults(service: QueueService) -> None:
    entry = service.enqueue("report-1", metadata={"report_type": "lab_results"})

    assert entry.owner_id == OWNER
    assert entry.status is QueueStatus.queued
    assert entry.priority == 1
    assert entry.max_attempts == 3
    assert entry.attempt_count == 0
    assert entry.metadata == {"report_type": "lab_results"}


@pytest.mark.asyncio
async def test_enqueue_then_process(
    store: QueueStore, service: QueueService, registry: StageRegistry
) -> None:
    """Test a service-enqueued entry is visible as completed after a run."""
    entry = service.enqueue("report-1")
    orchestrator = PipelineOrchestrator(store, registry, notifier=RecordingNotifier())

    _ = await orchestrator.process_next(OWNER)

    current = service.get_entry(entry.entry_id)
    assert current is not None
    assert current.status is QueueStatus.completed
    assert service.get_stats().completed == 1

