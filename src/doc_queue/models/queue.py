"""Processing queue entry model."""

from typing import TypeAlias

from typing_extensions import override

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base

JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]


class QueueEntry(Base):
    """One uploaded document's unit of processing work.

    Written by:
    - the queue service: enqueue, retry, cancel, clear, priority changes
    - the pipeline orchestrator: claims, phase/progress updates, completion

    Both sides go through QueueStore, which enforces the conditional
    updates. Rows are scoped to ``owner_id``; nothing reads across owners
    except the worker's claim loop and stale recovery.

    Database-specific fields (not in QueueEntryRecord):
    - id: surrogate key, used as the final FIFO tie breaker
    - version: optimistic concurrency counter
    """

    __tablename__ = "processing_queue"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        Index("ix_processing_queue_order", "priority", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    document_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, index=True)

    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    processing_phase: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    processing_started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    processing_completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[JSONValue] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    result: Mapped[JSONValue] = mapped_column(JSON, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return (
            f"<QueueEntry(entry_id={self.entry_id}, document_id={self.document_id}, "
            f"status={self.status}, priority={self.priority})>"
        )
