"""Status state machine for queue entries.

The transition table below is the only place that decides which status
changes are legal. QueueStore enforces the same rules at write time through
conditional updates, so a stale read can never push an entry through an
illegal transition.
"""

from enum import StrEnum
from typing import Final

from .errors import AttemptsExhausted, InvalidTransition, InvariantViolation
from .schemas import QueueEntryRecord, QueueStatus


class QueueEvent(StrEnum):
    claim = "claim"
    complete = "complete"
    fail = "fail"
    retry = "retry"
    cancel = "cancel"
    clear = "clear"


# None as target means the entry is deleted
TRANSITIONS: Final[dict[tuple[QueueStatus, QueueEvent], QueueStatus | None]] = {
    (QueueStatus.queued, QueueEvent.claim): QueueStatus.processing,
    (QueueStatus.retrying, QueueEvent.claim): QueueStatus.processing,
    (QueueStatus.processing, QueueEvent.complete): QueueStatus.completed,
    (QueueStatus.processing, QueueEvent.fail): QueueStatus.failed,
    (QueueStatus.failed, QueueEvent.retry): QueueStatus.retrying,
    (QueueStatus.queued, QueueEvent.cancel): None,
    (QueueStatus.completed, QueueEvent.clear): None,
}

CLAIMABLE: Final[frozenset[QueueStatus]] = frozenset(
    current for (current, event) in TRANSITIONS if event is QueueEvent.claim
)


def source_status(event: QueueEvent) -> QueueStatus:
    """Return the single status an event may start from.

    Only valid for events with exactly one source state (everything but claim).
    """
    sources = [current for (current, ev) in TRANSITIONS if ev is event]
    if len(sources) != 1:
        raise ValueError(f"{event} has {len(sources)} source states")
    return sources[0]


def next_status(
    current: QueueStatus, event: QueueEvent, *, entry_id: str = "?"
) -> QueueStatus | None:
    """Look up the target of ``event`` from ``current``.

    Raises:
        InvalidTransition: If the pair is not in the table
    """
    key = (current, event)
    if key not in TRANSITIONS:
        raise InvalidTransition(entry_id, current, event.value)
    return TRANSITIONS[key]


def can_retry(entry: QueueEntryRecord) -> bool:
    return entry.status is QueueStatus.failed and entry.attempt_count < entry.max_attempts


def check_retry(entry: QueueEntryRecord) -> None:
    """Validate a retry request against the table and the attempt budget."""
    _ = next_status(entry.status, QueueEvent.retry, entry_id=entry.entry_id)
    if entry.attempt_count >= entry.max_attempts:
        raise AttemptsExhausted(entry.entry_id, entry.attempt_count, entry.max_attempts)


def is_terminal(entry: QueueEntryRecord) -> bool:
    """Completed entries and failed entries with no attempts left are terminal."""
    if entry.status is QueueStatus.completed:
        return True
    return entry.status is QueueStatus.failed and entry.attempt_count >= entry.max_attempts


def check_invariants(entry: QueueEntryRecord) -> None:
    """Raise InvariantViolation if the record is not internally consistent."""
    if entry.attempt_count > entry.max_attempts:
        raise InvariantViolation(
            f"{entry.entry_id}: attempt_count {entry.attempt_count} exceeds "
            f"max_attempts {entry.max_attempts}"
        )
    if entry.status is QueueStatus.completed and (
        entry.processing_time_ms is None or entry.processing_time_ms < 0
    ):
        raise InvariantViolation(f"{entry.entry_id}: completed without processing time")
    if entry.status is QueueStatus.failed and not entry.error_message:
        raise InvariantViolation(f"{entry.entry_id}: failed without error message")
