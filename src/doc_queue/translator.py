"""Conversion between QueueEntry rows and QueueEntryRecord snapshots."""

from .models import QueueEntry
from .schemas import ProcessingPhase, QueueEntryRecord, QueueStatus


def db_entry_to_record(db_entry: QueueEntry) -> QueueEntryRecord:
    """Convert SQLAlchemy QueueEntry to Pydantic QueueEntryRecord.

    Returns:
        Frozen QueueEntryRecord with every persisted field
    """
    metadata = db_entry.entry_metadata if isinstance(db_entry.entry_metadata, dict) else {}
    result = db_entry.result if isinstance(db_entry.result, dict) else None

    return QueueEntryRecord(
        entry_id=db_entry.entry_id,
        owner_id=db_entry.owner_id,
        document_id=db_entry.document_id,
        priority=db_entry.priority,
        status=QueueStatus(db_entry.status),
        attempt_count=db_entry.attempt_count,
        max_attempts=db_entry.max_attempts,
        error_message=db_entry.error_message,
        processing_phase=ProcessingPhase(db_entry.processing_phase),
        progress_percentage=db_entry.progress_percentage,
        processing_started_at=db_entry.processing_started_at,
        processing_completed_at=db_entry.processing_completed_at,
        processing_time_ms=db_entry.processing_time_ms,
        metadata=metadata,
        result=result,
        version=db_entry.version,
        created_at=db_entry.created_at,
        updated_at=db_entry.updated_at,
        seq=db_entry.id,
    )
