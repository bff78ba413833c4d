"""Queue error taxonomy."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import QueueStatus
    from .stages import Stage


class QueueError(Exception):
    """Base error for all user-facing queue exceptions."""

    error_code: str = "queue_error"


class NotFound(QueueError):
    """Raised when an entry does not exist or belongs to another owner."""

    error_code = "not_found"

    def __init__(self, entry_id: str):
        super().__init__(f"Queue item not found: {entry_id}")
        self.entry_id = entry_id


class InvalidTransition(QueueError):
    """Raised when the entry's current status does not permit the request."""

    error_code = "invalid_transition"

    def __init__(self, entry_id: str, current: QueueStatus | str, event: str):
        super().__init__(f"Cannot {event} queue item {entry_id} while it is {current}")
        self.entry_id = entry_id
        self.current = current
        self.event = event


class AttemptsExhausted(QueueError):
    """Raised when a retry is requested with no attempts left."""

    error_code = "attempts_exhausted"

    def __init__(self, entry_id: str, attempt_count: int, max_attempts: int):
        super().__init__(
            f"Maximum retry attempts reached ({attempt_count}/{max_attempts})"
        )
        self.entry_id = entry_id
        self.attempt_count = attempt_count
        self.max_attempts = max_attempts


class StageError(QueueError):
    """Raised when a pipeline stage fails."""

    error_code = "stage_error"

    def __init__(self, stage: Stage, message: str):
        message = message or "unknown error"
        super().__init__(f"{stage.value} stage failed: {message}")
        self.stage = stage
        self.message = message


class ProviderUnavailable(QueueError):
    """Raised when a provider availability check fails."""

    error_code = "provider_unavailable"

    def __init__(self, stage: Stage, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"{stage.value} provider unavailable{detail}")
        self.stage = stage


class InvariantViolation(QueueError):
    """Raised when a queue entry breaks one of its record invariants."""

    error_code = "invariant_violation"
