"""Shared test fixtures for doc_queue tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from doc_queue import ChangeBus, QueueService, QueueStore, StageRegistry
from doc_queue.database import create_db_engine, create_session_factory, init_db
from doc_queue.errors import StageError
from doc_queue.notify import RecordingNotifier
from doc_queue.schemas import QueueChange
from doc_queue.stages import Stage

if TYPE_CHECKING:
    from collections.abc import Collection, Generator

    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, sessionmaker


OWNER = "user-1"
OTHER_OWNER = "user-2"


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now: int = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeProvider:
    """Stage provider double that records its calls.

    Args:
        output: Dict returned from invoke
        error: Exception raised from invoke
        available: Result of is_available (an exception instance is raised instead)
        clock: Clock advanced by ``duration_ms`` on each invoke
    """

    def __init__(
        self,
        output: dict[str, Any] | None = None,
        *,
        error: Exception | None = None,
        available: bool | Exception = True,
        clock: FakeClock | None = None,
        duration_ms: int = 0,
    ):
        self.output: dict[str, Any] = output if output is not None else {}
        self.error: Exception | None = error
        self.available: bool | Exception = available
        self.clock: FakeClock | None = clock
        self.duration_ms: int = duration_ms
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append({key: value for key, value in payload.items()})
        if self.clock is not None:
            self.clock.advance(self.duration_ms)
        if self.error is not None:
            raise self.error
        return dict(self.output)

    async def is_available(self) -> bool:
        if isinstance(self.available, Exception):
            raise self.available
        return self.available


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """Create SQLite in-memory engine with all tables created.

    Yields:
        Engine: SQLAlchemy engine with in-memory SQLite database
    """
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    """Create session factory bound to in-memory engine."""
    return create_session_factory(in_memory_engine)


@pytest.fixture
def change_bus() -> ChangeBus:
    return ChangeBus()


@pytest.fixture
def changes(change_bus: ChangeBus) -> list[QueueChange]:
    """Every change published on the bus, in order."""
    received: list[QueueChange] = []
    _ = change_bus.subscribe(received.append)
    return received


@pytest.fixture
def store(
    session_factory: sessionmaker[Session], change_bus: ChangeBus, clock: FakeClock
) -> QueueStore:
    """Create QueueStore on the in-memory database with a fake clock."""
    return QueueStore(session_factory, change_bus, clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store: QueueStore, notifier: RecordingNotifier) -> QueueService:
    """QueueService scoped to OWNER."""
    return QueueService(store, owner_id=OWNER, notifier=notifier)


@pytest.fixture
def providers(clock: FakeClock) -> dict[Stage, FakeProvider]:
    """One healthy provider per external stage, each taking 100 ms."""
    return {
        Stage.ocr: FakeProvider({"text": "Hemoglobin 13.2 g/dL"}, clock=clock, duration_ms=100),
        Stage.entity_extraction: FakeProvider(
            {"entities": [{"type": "TEST_NAME", "text": "Hemoglobin"}]}, clock=clock, duration_ms=100
        ),
        Stage.terminology_validation: FakeProvider(
            {"codes": {"Hemoglobin": "718-7"}}, clock=clock, duration_ms=100
        ),
        Stage.llm_enhancement: FakeProvider(
            {"summary": "Normal hemoglobin"}, clock=clock, duration_ms=100
        ),
    }


@pytest.fixture
def registry(providers: dict[Stage, FakeProvider]) -> StageRegistry:
    return StageRegistry(dict(providers))


def failing_provider(
    message: str = "Textract API error: 500", stage: Stage = Stage.ocr
) -> FakeProvider:
    return FakeProvider(error=StageError(stage, message))


def lose_update_race(
    monkeypatch: pytest.MonkeyPatch, store: QueueStore, entry_ids: Collection[str]
) -> None:
    """Make conditional updates of ``entry_ids`` miss, as if another writer got there first."""
    original = store.update_entry

    def update_entry(entry_id: str, values: Any, **guards: Any):
        if entry_id in entry_ids:
            return None
        return original(entry_id, values, **guards)

    monkeypatch.setattr(store, "update_entry", update_entry)


def lose_delete_race(
    monkeypatch: pytest.MonkeyPatch, store: QueueStore, entry_ids: Collection[str]
) -> None:
    """Make guarded deletes skip ``entry_ids``, as if they changed after being read."""
    original = store.delete_entries

    def delete_entries(ids: Collection[str], **guards: Any):
        return original([i for i in ids if i not in entry_ids], **guards)

    monkeypatch.setattr(store, "delete_entries", delete_entries)
