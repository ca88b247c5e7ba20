"""User-facing notification events and sinks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from scene_studio.orchestrator.failure_classifier import classify_generation_failure
from scene_studio.orchestrator.models import RunSummary

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Severity of a notification."""

    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Notification:
    """One event for user-facing display."""

    level: NotificationLevel
    title: str
    message: str
    entity_id: str | None = None
    kind: str | None = None
    details: dict[str, object] = field(default_factory=dict, compare=False)


class NotificationSink(Protocol):
    """Receives terminal success/failure/timeout events."""

    def notify(self, notification: Notification) -> None:
        """Deliver one notification."""


class LoggingNotificationSink:
    """Renders notifications to the application log."""

    _LEVELS = {
        NotificationLevel.SUCCESS: logging.INFO,
        NotificationLevel.INFO: logging.INFO,
        NotificationLevel.WARNING: logging.WARNING,
        NotificationLevel.ERROR: logging.ERROR,
    }

    def notify(self, notification: Notification) -> None:
        logger.log(
            self._LEVELS[notification.level],
            "%s: %s",
            notification.title,
            notification.message,
        )


class CollectingNotificationSink:
    """Keeps notifications in memory; used by the CLI report and tests."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_level(self, level: NotificationLevel) -> list[Notification]:
        return [item for item in self.notifications if item.level == level]


class FanOutNotificationSink:
    """Delivers each notification to several sinks."""

    def __init__(self, *sinks: NotificationSink) -> None:
        self.sinks = sinks

    def notify(self, notification: Notification) -> None:
        for sink in self.sinks:
            sink.notify(notification)


def failure_notice(*, entity_id: str, kind: str, error: BaseException | str) -> Notification:
    classified = classify_generation_failure(error)
    return Notification(
        level=NotificationLevel.ERROR,
        title=classified.title,
        message=f"{kind} generation failed for {entity_id}: {error}",
        entity_id=entity_id,
        kind=kind,
        details=classified.to_details(),
    )


def summary_notice(*, operation: str, summary: RunSummary) -> Notification:
    parts = [f"succeeded {summary.succeeded}"]
    if summary.failed:
        parts.append(f"failed {summary.failed}")
    if summary.aborted:
        parts.append("aborted")
    return Notification(
        level=NotificationLevel.WARNING if summary.aborted else NotificationLevel.INFO,
        title=f"{operation} aborted" if summary.aborted else f"{operation} finished",
        message=", ".join(parts),
        details={
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "aborted": summary.aborted,
            "reconciled": summary.reconciled,
        },
    )
