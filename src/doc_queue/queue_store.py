"""SQLAlchemy-backed queue store.

This module owns every read and write of the ``processing_queue`` table.
It handles:
- Mapping between QueueEntry rows (SQLAlchemy) and QueueEntryRecord (Pydantic)
- Timestamp and version management on every write
- Conditional updates (compare-and-swap on status and version)
- Atomic claiming of queued/retrying entries
- Publishing a QueueChange on the change bus after each commit
"""

import logging
import time
import uuid
from collections.abc import Callable, Collection, Mapping
from typing import Any

from sqlalchemy import Select, delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from .change_bus import ChangeBus
from .models import QueueEntry
from .schemas import ChangeKind, ProcessingPhase, QueueChange, QueueEntryRecord, QueueStatus
from .state_machine import CLAIMABLE
from .translator import db_entry_to_record

logger = logging.getLogger(__name__)

# Candidates examined per claim_next call before giving up on lost races
_CLAIM_CANDIDATES = 10


def now_ms() -> int:
    return int(time.time() * 1000)


class QueueStore:
    """Durable mapping from entry id to queue entry.

    Example:
        engine = create_db_engine("sqlite:///:memory:")
        init_db(engine)
        store = QueueStore(create_session_factory(engine), ChangeBus())

        entry = store.add_entry("user-1", "report-42", priority=5)
        claimed = store.claim_next()
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        change_bus: ChangeBus | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize store with session factory and change bus.

        Args:
            session_factory: SQLAlchemy session factory (sessionmaker)
            change_bus: Bus that receives a QueueChange after every write
            clock: Returns the current time in epoch milliseconds
        """
        self.session_factory: sessionmaker[Session] = session_factory
        self.change_bus: ChangeBus = change_bus if change_bus is not None else ChangeBus()
        self.clock: Callable[[], int] = clock

    def _publish(self, kind: ChangeKind, record: QueueEntryRecord) -> None:
        self.change_bus.publish(QueueChange(kind=kind, entry=record))

    @staticmethod
    def _ordered(stmt: Select[tuple[QueueEntry]]) -> Select[tuple[QueueEntry]]:
        return stmt.order_by(
            QueueEntry.priority.desc(),
            QueueEntry.created_at.asc(),
            QueueEntry.id.asc(),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add_entry(
        self,
        owner_id: str,
        document_id: str,
        *,
        priority: int = 1,
        max_attempts: int = 3,
        metadata: Mapping[str, Any] | None = None,
    ) -> QueueEntryRecord:
        """Insert a new queued entry.

        Args:
            owner_id: Principal the entry belongs to
            document_id: Document to process
            priority: Higher values are served first
            max_attempts: Attempt budget, fixed for the entry's lifetime
            metadata: Free-form diagnostics

        Returns:
            The stored entry
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self.clock()
        with self.session_factory() as session:
            db_entry = QueueEntry(
                entry_id=str(uuid.uuid4()),
                owner_id=owner_id,
                document_id=document_id,
                priority=priority,
                status=QueueStatus.queued.value,
                attempt_count=0,
                max_attempts=max_attempts,
                processing_phase=ProcessingPhase.pending.value,
                progress_percentage=0,
                entry_metadata=dict(metadata or {}),
                version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(db_entry)
            session.commit()
            record = db_entry_to_record(db_entry)

        logger.debug("Queued %s for document %s", record.entry_id, document_id)
        self._publish(ChangeKind.insert, record)
        return record

    def update_entry(
        self,
        entry_id: str,
        values: Mapping[str, Any],
        *,
        expected_status: QueueStatus | Collection[QueueStatus] | None = None,
        expected_version: int | None = None,
        expected_started_at: int | None = None,
        owner_id: str | None = None,
    ) -> QueueEntryRecord | None:
        """Conditionally patch one entry.

        The UPDATE ... WHERE carries the guards, so the check and the write
        are a single statement: a concurrent writer that got there first
        makes this call return None instead of overwriting its result.

        Args:
            entry_id: Entry to patch
            values: Column values keyed by QueueEntry attribute name
            expected_status: Status (or statuses) the row must still have
            expected_version: Version the row must still have
            expected_started_at: processing_started_at the row must still have;
                identifies one claim, so a run cannot write into a later run
            owner_id: Restrict to this owner's entries

        Returns:
            Updated entry, or None if not found or a guard did not match
        """
        if not values:
            raise ValueError("update_entry requires at least one value")

        conditions = [QueueEntry.entry_id == entry_id]
        if owner_id is not None:
            conditions.append(QueueEntry.owner_id == owner_id)
        if isinstance(expected_status, QueueStatus):
            conditions.append(QueueEntry.status == expected_status.value)
        elif expected_status is not None:
            conditions.append(QueueEntry.status.in_([s.value for s in expected_status]))
        if expected_version is not None:
            conditions.append(QueueEntry.version == expected_version)
        if expected_started_at is not None:
            conditions.append(QueueEntry.processing_started_at == expected_started_at)

        update_values: dict[Any, Any] = {
            getattr(QueueEntry, key): self._column_value(value) for key, value in values.items()
        }
        update_values[QueueEntry.updated_at] = self.clock()
        update_values[QueueEntry.version] = QueueEntry.version + 1

        with self.session_factory() as session:
            stmt = update(QueueEntry).where(*conditions).values(update_values)
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            if result.rowcount == 0:  # pyright: ignore[reportAttributeAccessIssue]
                session.rollback()
                return None

            db_entry = session.execute(
                select(QueueEntry)
                .where(QueueEntry.entry_id == entry_id)
                .execution_options(populate_existing=True)
            ).scalar_one()
            record = db_entry_to_record(db_entry)
            session.commit()

        self._publish(ChangeKind.update, record)
        return record

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, QueueStatus | ProcessingPhase):
            return value.value
        return value

    def delete_entry(
        self,
        entry_id: str,
        *,
        expected_status: QueueStatus | None = None,
        owner_id: str | None = None,
    ) -> QueueEntryRecord | None:
        """Delete one entry if it still matches the guards.

        Returns:
            The entry as it was before deletion, or None if nothing was deleted
        """
        deleted = self._delete([entry_id], expected_status=expected_status, owner_id=owner_id)
        return deleted[0] if deleted else None

    def delete_entries(
        self,
        entry_ids: Collection[str],
        *,
        expected_status: QueueStatus | None = None,
        owner_id: str | None = None,
    ) -> list[QueueEntryRecord]:
        """Delete a set of entries; rows that no longer match the guards are kept.

        Returns:
            Entries that were deleted
        """
        if not entry_ids:
            return []
        return self._delete(list(entry_ids), expected_status=expected_status, owner_id=owner_id)

    def _delete(
        self,
        entry_ids: list[str],
        *,
        expected_status: QueueStatus | None,
        owner_id: str | None,
    ) -> list[QueueEntryRecord]:
        deleted: list[QueueEntryRecord] = []

        with self.session_factory() as session:
            stmt = select(QueueEntry).where(QueueEntry.entry_id.in_(entry_ids))
            if owner_id is not None:
                stmt = stmt.where(QueueEntry.owner_id == owner_id)
            if expected_status is not None:
                stmt = stmt.where(QueueEntry.status == expected_status.value)

            for db_entry in session.execute(stmt).scalars().all():
                record = db_entry_to_record(db_entry)
                # Guard on version too: the row must be exactly what we read
                result = session.execute(
                    delete(QueueEntry).where(
                        QueueEntry.entry_id == record.entry_id,
                        QueueEntry.status == record.status.value,
                        QueueEntry.version == record.version,
                    ),
                    execution_options={"synchronize_session": False},
                )
                if result.rowcount:  # pyright: ignore[reportAttributeAccessIssue]
                    deleted.append(record)
            session.commit()

        for record in deleted:
            self._publish(ChangeKind.delete, record)
        return deleted

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    def claim(self, entry_id: str) -> QueueEntryRecord | None:
        """Atomically move one queued/retrying entry to processing.

        Returns:
            The claimed entry, or None if it is missing, not claimable, or
            another run claimed it first
        """
        entry = self.get_entry(entry_id)
        if entry is None or entry.status not in CLAIMABLE:
            return None
        return self._claim_observed(entry)

    def claim_next(self, owner_id: str | None = None) -> QueueEntryRecord | None:
        """Claim the highest priority claimable entry.

        Candidates are taken in (priority desc, created_at asc) order. A lost
        race on one candidate moves on to the next instead of failing.

        Args:
            owner_id: Only consider this owner's entries

        Returns:
            The claimed entry, or None if nothing could be claimed
        """
        with self.session_factory() as session:
            stmt = select(QueueEntry).where(
                QueueEntry.status.in_([s.value for s in CLAIMABLE])
            )
            if owner_id is not None:
                stmt = stmt.where(QueueEntry.owner_id == owner_id)
            stmt = self._ordered(stmt).limit(_CLAIM_CANDIDATES)
            candidates = [db_entry_to_record(e) for e in session.execute(stmt).scalars().all()]

        for candidate in candidates:
            claimed = self._claim_observed(candidate)
            if claimed is not None:
                return claimed
            logger.debug("Lost claim race for %s", candidate.entry_id)
        return None

    def _claim_observed(self, observed: QueueEntryRecord) -> QueueEntryRecord | None:
        # A fresh entry starts its first attempt here; a retrying entry had
        # its attempt counted when the retry was requested.
        attempt_count = observed.attempt_count
        if observed.status is QueueStatus.queued:
            attempt_count += 1

        return self.update_entry(
            observed.entry_id,
            {
                "status": QueueStatus.processing,
                "attempt_count": attempt_count,
                "error_message": None,
                "processing_phase": ProcessingPhase.pending,
                "progress_percentage": 0,
                "processing_started_at": self.clock(),
                "processing_completed_at": None,
                "processing_time_ms": None,
            },
            expected_status=observed.status,
            expected_version=observed.version,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_entry(self, entry_id: str, owner_id: str | None = None) -> QueueEntryRecord | None:
        """Get entry by id, optionally scoped to an owner."""
        with self.session_factory() as session:
            stmt = select(QueueEntry).where(QueueEntry.entry_id == entry_id)
            if owner_id is not None:
                stmt = stmt.where(QueueEntry.owner_id == owner_id)
            db_entry = session.execute(stmt).scalar_one_or_none()

            if db_entry:
                return db_entry_to_record(db_entry)
            return None

    def list_entries(
        self,
        owner_id: str | None = None,
        status: QueueStatus | None = None,
    ) -> list[QueueEntryRecord]:
        """List entries ordered by (priority desc, created_at asc)."""
        with self.session_factory() as session:
            stmt = select(QueueEntry)
            if owner_id is not None:
                stmt = stmt.where(QueueEntry.owner_id == owner_id)
            if status is not None:
                stmt = stmt.where(QueueEntry.status == status.value)
            stmt = self._ordered(stmt)
            return [db_entry_to_record(e) for e in session.execute(stmt).scalars().all()]

    def find_stale(self, older_than_ms: int) -> list[QueueEntryRecord]:
        """Processing entries whose run started before ``older_than_ms``."""
        with self.session_factory() as session:
            stmt = select(QueueEntry).where(
                QueueEntry.status == QueueStatus.processing.value,
                QueueEntry.processing_started_at < older_than_ms,
            )
            stmt = self._ordered(stmt)
            return [db_entry_to_record(e) for e in session.execute(stmt).scalars().all()]
