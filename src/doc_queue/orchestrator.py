"""Drives claimed queue entries through the processing pipeline.

The orchestrator holds no extraction logic. For each entry it:
1. Checks provider availability and plans the run (full or degraded)
2. Invokes each stage in order with the accumulated intermediate result
3. Persists a phase/progress checkpoint after every stage
4. Completes the entry, or fails it with the first stage error
"""

import asyncio
import logging
from typing import Any

from .errors import ProviderUnavailable, StageError
from .notify import LoggingNotifier, NotificationKind, Notifier
from .queue_store import QueueStore
from .schemas import ProcessingPhase, QueueEntryRecord, QueueStatus
from .stages import PIPELINE, STAGE_CHECKPOINTS, Stage, StagePayload, StageRegistry

logger = logging.getLogger(__name__)

STUCK_PROCESSING_MESSAGE = "Reset due to stuck processing"


class PipelineOrchestrator:
    """Sole owner of entries while they are ``processing``.

    Every write a run makes is guarded on the claim it started from
    (status processing and the claim's processing_started_at). Once the
    entry is reset and claimed again, the old run's writes no longer match
    and it abandons the entry.

    Store calls are synchronous SQLAlchemy calls made on the event loop.
    Only provider calls yield, so several orchestrators sharing one loop
    serialize on the database.

    Example:
        registry = StageRegistry({Stage.ocr: ocr, Stage.llm_enhancement: llm})
        orchestrator = PipelineOrchestrator(store, registry)
        entry = await orchestrator.process_next()
    """

    def __init__(
        self,
        store: QueueStore,
        registry: StageRegistry,
        *,
        notifier: Notifier | None = None,
    ):
        self.store: QueueStore = store
        self.registry: StageRegistry = registry
        self.notifier: Notifier = notifier if notifier is not None else LoggingNotifier()

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def process_next(self, owner_id: str | None = None) -> QueueEntryRecord | None:
        """Claim the highest priority entry and run it.

        Returns:
            The entry after the run, or None if nothing was claimable
        """
        entry = self.store.claim_next(owner_id)
        if entry is None:
            return None
        return await self.run_claimed(entry)

    async def process_entry(self, entry_id: str) -> QueueEntryRecord | None:
        """Claim a specific entry and run it.

        Returns:
            The entry after the run, or None if the claim was lost
        """
        entry = self.store.claim(entry_id)
        if entry is None:
            logger.info("Entry %s was not claimable", entry_id)
            return None
        return await self.run_claimed(entry)

    async def run_claimed(self, entry: QueueEntryRecord) -> QueueEntryRecord:
        """Run the pipeline for an entry this orchestrator has claimed."""
        if entry.status is not QueueStatus.processing:
            raise ValueError(f"Entry {entry.entry_id} is {entry.status}, not processing")

        logger.info(
            "Processing %s (document %s, attempt %d/%d)",
            entry.entry_id,
            entry.document_id,
            entry.attempt_count,
            entry.max_attempts,
        )

        availability = await self.check_availability()
        outcomes: dict[str, Any] = {}
        try:
            plan, skipped = self._plan(availability)
        except StageError as e:
            outcomes[e.stage.value] = "unavailable"
            return self._fail(entry, e, outcomes, hybrid=False)

        hybrid = not skipped
        for stage in skipped:
            outcomes[stage.value] = "skipped"
        if skipped:
            logger.warning(
                "Degraded run for %s, skipping %s",
                entry.entry_id,
                ", ".join(s.value for s in skipped),
            )

        payload: StagePayload = {
            "entry_id": entry.entry_id,
            "document_id": entry.document_id,
            "metadata": dict(entry.metadata),
            "stages": {},
        }
        output: StagePayload = {}

        for stage in plan:
            try:
                output = await self._invoke(stage, payload)
            except StageError as e:
                outcomes[stage.value] = "failed"
                return self._fail(entry, e, outcomes, hybrid=hybrid)

            payload["stages"][stage.value] = output
            outcomes[stage.value] = "completed"

            if stage is Stage.merge:
                break
            current = self._checkpoint(entry, stage, outcomes, hybrid)
            if current is None:
                return self._lost(entry)

        return self._complete(entry, output, outcomes, hybrid)

    # -------------------------------------------------------------------------
    # Provider availability
    # -------------------------------------------------------------------------

    async def check_availability(self) -> dict[Stage, bool]:
        """Check every registered provider concurrently.

        A check that raises counts as unavailable. Stages with no provider
        are reported unavailable.
        """
        registered = list(self.registry)
        results = await asyncio.gather(
            *(provider.is_available() for _, provider in registered), return_exceptions=True
        )

        availability = {stage: False for stage in PIPELINE}
        for (stage, _), result in zip(registered, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("%s", ProviderUnavailable(stage, str(result)))
                continue
            availability[stage] = bool(result)
        return availability

    def _plan(self, availability: dict[Stage, bool]) -> tuple[list[Stage], list[Stage]]:
        missing = [stage for stage in PIPELINE if not availability.get(stage, False)]
        for stage in missing:
            if self.registry.is_required(stage):
                raise StageError(stage, "provider unavailable")

        # Optional stages feed each other, so they run together or not at all
        if missing:
            skipped = [stage for stage in PIPELINE if not self.registry.is_required(stage)]
        else:
            skipped = []
        plan = [stage for stage in PIPELINE if stage not in skipped]
        return plan, skipped

    async def _invoke(self, stage: Stage, payload: StagePayload) -> StagePayload:
        provider = self.registry.get(stage)
        if provider is None:
            raise StageError(stage, "no provider registered")
        try:
            output = await provider.invoke(payload)
        except StageError:
            raise
        except Exception as e:
            logger.exception("Stage %s raised", stage.value)
            raise StageError(stage, str(e) or type(e).__name__) from e
        return dict(output or {})

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @staticmethod
    def _metadata(
        entry: QueueEntryRecord, outcomes: dict[str, Any], hybrid: bool
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = dict(entry.metadata)
        metadata["stages"] = dict(outcomes)
        metadata["hybrid"] = hybrid
        return metadata

    def _checkpoint(
        self,
        entry: QueueEntryRecord,
        stage: Stage,
        outcomes: dict[str, Any],
        hybrid: bool,
    ) -> QueueEntryRecord | None:
        phase, progress = STAGE_CHECKPOINTS[stage]
        return self.store.update_entry(
            entry.entry_id,
            {
                "processing_phase": phase,
                "progress_percentage": progress,
                "entry_metadata": self._metadata(entry, outcomes, hybrid),
            },
            expected_status=QueueStatus.processing,
            expected_started_at=entry.processing_started_at,
        )

    def _complete(
        self,
        entry: QueueEntryRecord,
        output: StagePayload,
        outcomes: dict[str, Any],
        hybrid: bool,
    ) -> QueueEntryRecord:
        completed_at = self.store.clock()
        started_at = entry.processing_started_at or completed_at
        result = dict(output)
        result["hybrid"] = hybrid

        updated = self.store.update_entry(
            entry.entry_id,
            {
                "status": QueueStatus.completed,
                "processing_phase": ProcessingPhase.completed,
                "progress_percentage": 100,
                "processing_completed_at": completed_at,
                "processing_time_ms": max(0, completed_at - started_at),
                "entry_metadata": self._metadata(entry, outcomes, hybrid),
                "result": result,
            },
            expected_status=QueueStatus.processing,
            expected_started_at=entry.processing_started_at,
        )
        if updated is None:
            return self._lost(entry)

        logger.info("Completed %s in %d ms", entry.entry_id, updated.processing_time_ms or 0)
        self.notifier.notify(
            "Processing Complete",
            f"Document processed using {'hybrid' if hybrid else 'LLM-only'} pipeline",
            NotificationKind.success,
        )
        return updated

    def _fail(
        self,
        entry: QueueEntryRecord,
        error: StageError,
        outcomes: dict[str, Any],
        *,
        hybrid: bool,
    ) -> QueueEntryRecord:
        metadata = self._metadata(entry, outcomes, hybrid)
        metadata["failed_stage"] = error.stage.value

        updated = self.store.update_entry(
            entry.entry_id,
            {
                "status": QueueStatus.failed,
                "error_message": str(error),
                "processing_phase": ProcessingPhase.failed,
                "entry_metadata": metadata,
            },
            expected_status=QueueStatus.processing,
            expected_started_at=entry.processing_started_at,
        )
        if updated is None:
            return self._lost(entry)

        logger.warning(
            "Failed %s on attempt %d/%d: %s",
            entry.entry_id,
            updated.attempt_count,
            updated.max_attempts,
            error,
        )
        self.notifier.notify("Processing Failed", str(error), NotificationKind.destructive)
        return updated

    def _lost(self, entry: QueueEntryRecord) -> QueueEntryRecord:
        # Stale recovery reset the entry, and it may since have been claimed again
        logger.warning("Entry %s left processing during the run; dropping result", entry.entry_id)
        current = self.store.get_entry(entry.entry_id)
        return current if current is not None else entry

    # -------------------------------------------------------------------------
    # Stale recovery
    # -------------------------------------------------------------------------

    def recover_stale(self, max_age_ms: int) -> list[QueueEntryRecord]:
        """Fail entries that have been processing longer than ``max_age_ms``.

        Returns:
            Entries moved to failed
        """
        cutoff = self.store.clock() - max_age_ms
        recovered: list[QueueEntryRecord] = []
        for entry in self.store.find_stale(cutoff):
            updated = self.store.update_entry(
                entry.entry_id,
                {
                    "status": QueueStatus.failed,
                    "error_message": STUCK_PROCESSING_MESSAGE,
                    "processing_phase": ProcessingPhase.failed,
                },
                expected_status=QueueStatus.processing,
                expected_version=entry.version,
            )
            if updated is not None:
                recovered.append(updated)

        if recovered:
            logger.info("Reset %d stuck entries", len(recovered))
        return recovered
