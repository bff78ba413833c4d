"""
Pydantic schemas for queue entries, change events and operation results.
Shared between the queue service, the orchestrator and the client mirror.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, JsonValue


class QueueStatus(StrEnum):
    """Closed set of queue entry states."""

    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    retrying = "retrying"


class ProcessingPhase(StrEnum):
    """Coarse phase marker persisted after each pipeline stage."""

    pending = "pending"
    ocr_completed = "ocr_completed"
    entities_extracted = "entities_extracted"
    terminology_validated = "terminology_validated"
    llm_enhancement = "llm_enhancement"
    completed = "completed"
    failed = "failed"


class ChangeKind(StrEnum):
    insert = "insert"
    update = "update"
    delete = "delete"


class QueueEntryRecord(BaseModel):
    """Immutable snapshot of one queue entry."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    owner_id: str
    document_id: str
    priority: int = 1
    status: QueueStatus = QueueStatus.queued
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    error_message: str | None = None
    processing_phase: ProcessingPhase = ProcessingPhase.pending
    progress_percentage: int = Field(default=0, ge=0, le=100)
    processing_started_at: int | None = None
    processing_completed_at: int | None = None
    processing_time_ms: int | None = None
    metadata: dict[str, JsonValue] = Field(default_factory=dict)
    result: dict[str, JsonValue] | None = None
    version: int = 0
    created_at: int
    updated_at: int
    # Store-internal insertion sequence, used only to break FIFO ties
    seq: int = 0

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)


class QueueChange(BaseModel):
    """Change-feed event emitted after every committed queue write."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    entry: QueueEntryRecord


class QueueStats(BaseModel):
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0


class EntryFailure(BaseModel):
    entry_id: str
    error_code: str
    message: str


class BulkOutcome(BaseModel):
    """Aggregated result of a bulk operation.

    Successes are committed even when some entries fail.
    """

    succeeded: list[str] = Field(default_factory=list)
    failures: list[EntryFailure] = Field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.succeeded and not self.failures


class OperationResult(BaseModel):
    """User-facing outcome of a QueueService operation."""

    success: bool
    title: str
    message: str
    error_code: str | None = None
    affected: list[str] = Field(default_factory=list)
    failures: list[EntryFailure] = Field(default_factory=list)
    entry: QueueEntryRecord | None = None
