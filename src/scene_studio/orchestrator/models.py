"""Domain models for generation work items, descriptors and job handles."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class JobKind(str, Enum):
    """Kinds of remote generation work."""

    DESCRIPTION = "description"
    PRIMARY_IMAGE = "primary_image"
    VARIANT_IMAGE = "variant_image"
    STORYBOARD = "storyboard"
    VIDEO_JOB = "video_job"


class WorkItemStatus(str, Enum):
    """In-memory lifecycle of one schedulable unit."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class VideoStatus(str, Enum):
    """Displayed status of an asynchronous video job."""

    PREPARING = "preparing"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_VIDEO_STATUSES = frozenset(
    {VideoStatus.PREPARING, VideoStatus.QUEUED, VideoStatus.PROCESSING},
)


@dataclass(slots=True)
class WorkItem:
    """One schedulable unit of work tied to an entity and a job kind."""

    entity_id: str
    kind: JobKind
    group_key: str
    attempts_made: int = 0
    status: WorkItemStatus = WorkItemStatus.PENDING


@dataclass(slots=True, frozen=True)
class TaskDescriptor:
    """Durable marker of an in-flight work item."""

    entity_id: str
    kind: str
    started_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_id, self.kind)

    def age(self, now: datetime) -> timedelta:
        return now - self.started_at


@dataclass(slots=True, frozen=True)
class JobHandle:
    """Reference to a remote job accepted asynchronously."""

    external_id: str
    provider_tag: str | None = None


@dataclass(slots=True)
class PollState:
    """Mutable polling progress for one entity."""

    entity_id: str
    handle: JobHandle
    attempts_made: int = 0
    max_attempts: int = 120


@dataclass(slots=True)
class GenerationOutput:
    """Result of a synchronous generation call."""

    value: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PollResponse:
    """One status response from the remote job endpoint."""

    status: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Success(Generic[T]):
    """Job finished within its attempt budget."""

    value: T
    attempts: int

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class Exhausted:
    """Every attempt failed; carries the last error."""

    last_error: BaseException
    attempts: int

    @property
    def ok(self) -> bool:
        return False


@dataclass(slots=True, frozen=True)
class Cancelled:
    """Run was cancelled between attempts; not a failure."""

    attempts: int

    @property
    def ok(self) -> bool:
        return False


RetryOutcome = Success[Any] | Exhausted | Cancelled


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for one orchestration run."""

    succeeded: int = 0
    failed: int = 0
    aborted: bool = False
    reconciled: int = 0
    failed_entity_ids: list[str] = field(default_factory=list)

    def record(self, entity_id: str, outcome: RetryOutcome) -> None:
        if isinstance(outcome, Success):
            self.succeeded += 1
        elif isinstance(outcome, Exhausted):
            self.failed += 1
            if entity_id not in self.failed_entity_ids:
                self.failed_entity_ids.append(entity_id)

    def absorb(self, other: RunSummary) -> None:
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.aborted = self.aborted or other.aborted
        self.reconciled += other.reconciled
        for entity_id in other.failed_entity_ids:
            if entity_id not in self.failed_entity_ids:
                self.failed_entity_ids.append(entity_id)
