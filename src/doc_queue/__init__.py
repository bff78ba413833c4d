"""Document processing queue for uploaded health records."""

# Public API - Pydantic models and enums
from .schemas import (
    BulkOutcome,
    ChangeKind,
    OperationResult,
    ProcessingPhase,
    QueueChange,
    QueueEntryRecord,
    QueueStats,
    QueueStatus,
)

# Public API - Errors
from .errors import (
    AttemptsExhausted,
    InvalidTransition,
    NotFound,
    ProviderUnavailable,
    QueueError,
    StageError,
)

# Public API - Service implementations
from .change_bus import ChangeBus
from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .orchestrator import PipelineOrchestrator
from .progress import ProgressMonitor
from .queue_store import QueueStore
from .retry_policy import RetryPolicy
from .service import QueueService
from .stages import Stage, StageProvider, StageRegistry
from .sync import QueueMirror

__all__ = [
    # Configuration
    "Config",
    # Database
    "create_db_engine",
    "create_session_factory",
    "init_db",
    # Services
    "ChangeBus",
    "PipelineOrchestrator",
    "ProgressMonitor",
    "QueueMirror",
    "QueueService",
    "QueueStore",
    "RetryPolicy",
    "Stage",
    "StageProvider",
    "StageRegistry",
    # Pydantic Models
    "BulkOutcome",
    "ChangeKind",
    "OperationResult",
    "ProcessingPhase",
    "QueueChange",
    "QueueEntryRecord",
    "QueueStats",
    "QueueStatus",
    # Errors
    "AttemptsExhausted",
    "InvalidTransition",
    "NotFound",
    "ProviderUnavailable",
    "QueueError",
    "StageError",
]
