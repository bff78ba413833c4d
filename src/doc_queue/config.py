"""Configuration for the document processing queue.

Usage:
    from doc_queue.config import Config

    # Access config values
    database_url = Config.DATABASE_URL
    poll_interval = Config.WORKER_POLL_INTERVAL
"""

import os


class Config:
    """Centralized configuration for queue services and workers.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.

    Example:
        from doc_queue.config import Config

        print(Config.DOC_QUEUE_DIR)
        print(Config.DATABASE_URL)
    """

    # ========================================================================
    # Helper methods (static)
    # ========================================================================

    @staticmethod
    def _get_value(key: str, default: str) -> str:
        """Get configuration value from environment with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer configuration value."""
        return int(os.getenv(key, str(default)))

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        """Get float configuration value."""
        return float(os.getenv(key, str(default)))

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Get boolean configuration value."""
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    @staticmethod
    def _get_list(key: str, default: str, separator: str = ",") -> list[str]:
        """Get list configuration value."""
        return [item for item in os.getenv(key, default).split(separator) if item]

    # ========================================================================
    # Common Configuration
    # ========================================================================

    DOC_QUEUE_DIR: str = _get_value("DOC_QUEUE_DIR", os.path.expanduser("~/.doc_queue"))

    DATABASE_URL: str = _get_value("DATABASE_URL", f"sqlite:///{DOC_QUEUE_DIR}/queue.db")

    LOG_LEVEL: str = _get_value("LOG_LEVEL", "INFO")

    # ========================================================================
    # Queue Defaults
    # ========================================================================

    DEFAULT_PRIORITY: int = _get_int("DEFAULT_PRIORITY", 1)
    DEFAULT_MAX_ATTEMPTS: int = _get_int("DEFAULT_MAX_ATTEMPTS", 3)
    HIGH_PRIORITY_THRESHOLD: int = _get_int("HIGH_PRIORITY_THRESHOLD", 3)

    # ========================================================================
    # Worker / Orchestrator Configuration
    # ========================================================================

    WORKER_ID: str = _get_value("WORKER_ID", "worker-default")
    WORKER_POLL_INTERVAL: int = _get_int("WORKER_POLL_INTERVAL", 5)
    STUCK_PROCESSING_TIMEOUT_MINUTES: int = _get_int("STUCK_PROCESSING_TIMEOUT_MINUTES", 20)
    # Stages that may be skipped when their provider is down
    OPTIONAL_STAGES: list[str] = _get_list(
        "OPTIONAL_STAGES", "entity_extraction,terminology_validation"
    )

    # ========================================================================
    # Progress Polling (clients)
    # ========================================================================

    PROGRESS_POLL_INTERVAL: float = _get_float("PROGRESS_POLL_INTERVAL", 1.0)
    PROGRESS_MAX_CHECKS: int = _get_int("PROGRESS_MAX_CHECKS", 30)

    # ========================================================================
    # MQTT Configuration
    # ========================================================================

    BROADCAST_TYPE: str = _get_value("BROADCAST_TYPE", "none")
    MQTT_BROKER: str = _get_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = _get_int("MQTT_PORT", 1883)
    MQTT_TOPIC: str = _get_value("MQTT_TOPIC", "documents/processing-queue")
