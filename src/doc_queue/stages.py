"""Pipeline stages and the provider capability interface."""

import logging
from collections.abc import Iterator, Mapping
from enum import StrEnum
from typing import Any, Final, Protocol, runtime_checkable

from .config import Config
from .schemas import ProcessingPhase

logger = logging.getLogger(__name__)

StagePayload = dict[str, Any]


class Stage(StrEnum):
    """Pipeline stages, declared in execution order."""

    ocr = "ocr"
    entity_extraction = "entity_extraction"
    terminology_validation = "terminology_validation"
    llm_enhancement = "llm_enhancement"
    merge = "merge"


PIPELINE: Final[tuple[Stage, ...]] = tuple(Stage)

# Phase marker and progress persisted once the stage has succeeded
STAGE_CHECKPOINTS: Final[dict[Stage, tuple[ProcessingPhase, int]]] = {
    Stage.ocr: (ProcessingPhase.ocr_completed, 20),
    Stage.entity_extraction: (ProcessingPhase.entities_extracted, 40),
    Stage.terminology_validation: (ProcessingPhase.terminology_validated, 60),
    Stage.llm_enhancement: (ProcessingPhase.llm_enhancement, 80),
    Stage.merge: (ProcessingPhase.completed, 100),
}

# Stages the orchestrator may skip (degraded run) when their provider is down
DEFAULT_OPTIONAL_STAGES: Final[frozenset[Stage]] = frozenset(
    Stage(name.strip()) for name in Config.OPTIONAL_STAGES
)


@runtime_checkable
class StageProvider(Protocol):
    """External service that performs one pipeline stage.

    ``invoke`` receives the accumulated intermediate result and returns the
    keys this stage contributes. Raising StageError (or any exception) fails
    the run. ``is_available`` is a cheap availability check.
    """

    async def invoke(self, payload: StagePayload) -> StagePayload: ...

    async def is_available(self) -> bool: ...


class MergeResultsProvider:
    """Default merge stage.

    Folds the per-stage outputs collected under ``payload["stages"]`` into a
    single result, later stages overriding earlier keys.
    """

    async def invoke(self, payload: StagePayload) -> StagePayload:
        merged: StagePayload = {}
        stage_outputs: Mapping[str, Any] = payload.get("stages", {})
        for stage in PIPELINE:
            output = stage_outputs.get(stage.value)
            if isinstance(output, Mapping):
                merged.update(output)
        return {"merged": merged}

    async def is_available(self) -> bool:
        return True


class StageRegistry:
    """Maps each stage to the provider that performs it."""

    def __init__(
        self,
        providers: Mapping[Stage, StageProvider] | None = None,
        *,
        optional_stages: frozenset[Stage] = DEFAULT_OPTIONAL_STAGES,
    ):
        self._providers: dict[Stage, StageProvider] = {Stage.merge: MergeResultsProvider()}
        self.optional_stages: frozenset[Stage] = optional_stages
        for stage, provider in (providers or {}).items():
            self.register(stage, provider)

    def register(self, stage: Stage, provider: StageProvider) -> None:
        logger.debug("Registered %s for stage %s", type(provider).__name__, stage.value)
        self._providers[stage] = provider

    def get(self, stage: Stage) -> StageProvider | None:
        return self._providers.get(stage)

    def __contains__(self, stage: object) -> bool:
        return stage in self._providers

    def __iter__(self) -> Iterator[tuple[Stage, StageProvider]]:
        for stage in PIPELINE:
            provider = self._providers.get(stage)
            if provider is not None:
                yield stage, provider

    def is_required(self, stage: Stage) -> bool:
        return stage not in self.optional_stages
