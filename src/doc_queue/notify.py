"""Notification sinks for user-visible operation outcomes."""

import logging
from enum import StrEnum
from typing import NamedTuple, Protocol

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    default = "default"
    success = "success"
    destructive = "destructive"


class Notification(NamedTuple):
    title: str
    message: str
    kind: NotificationKind


class Notifier(Protocol):
    def notify(
        self, title: str, message: str, kind: NotificationKind = NotificationKind.default
    ) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log; destructive ones at warning level."""

    def notify(
        self, title: str, message: str, kind: NotificationKind = NotificationKind.default
    ) -> None:
        level = logging.WARNING if kind is NotificationKind.destructive else logging.INFO
        logger.log(level, "%s: %s", title, message)


class RecordingNotifier:
    """Keeps notifications in memory, newest last."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(
        self, title: str, message: str, kind: NotificationKind = NotificationKind.default
    ) -> None:
        self.notifications.append(Notification(title, message, kind))

    @property
    def last(self) -> Notification | None:
        return self.notifications[-1] if self.notifications else None

    def clear(self) -> None:
        self.notifications.clear()
