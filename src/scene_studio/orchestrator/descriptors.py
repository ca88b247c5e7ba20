"""Durable record of in-flight generation work.

Descriptors are the only orchestration state that must survive a restart:
on reload they tell which entities still show an "in progress" indicator,
and the expiry sweeper drops the ones whose job can no longer be running.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from scene_studio.config import Settings
from scene_studio.orchestrator.models import JobKind, TaskDescriptor
from scene_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

DescriptorListener = Callable[[str, TaskDescriptor], None]


class DescriptorBackend(Protocol):
    """Durable key-value persistence for descriptors."""

    def read_descriptors(self) -> list[TaskDescriptor]:
        """Return every persisted descriptor."""

    def write_descriptors(self, descriptors: list[TaskDescriptor]) -> None:
        """Replace the persisted set with ``descriptors``."""


class InMemoryDescriptorBackend:
    """Process-local backend for tests and throwaway runs."""

    def __init__(self, descriptors: Iterable[TaskDescriptor] = ()) -> None:
        self._descriptors = list(descriptors)

    def read_descriptors(self) -> list[TaskDescriptor]:
        return list(self._descriptors)

    def write_descriptors(self, descriptors: list[TaskDescriptor]) -> None:
        self._descriptors = list(descriptors)


@dataclass(slots=True)
class DescriptorTimeouts:
    """Per-kind age after which a descriptor is considered orphaned."""

    seconds_by_kind: dict[str, float] = field(default_factory=dict)
    default_seconds: float = 300.0

    def for_kind(self, kind: str) -> timedelta:
        return timedelta(seconds=self.seconds_by_kind.get(kind, self.default_seconds))

    @classmethod
    def from_settings(cls, settings: Settings) -> DescriptorTimeouts:
        sweeper = settings.sweeper
        return cls(
            seconds_by_kind={
                JobKind.DESCRIPTION.value: sweeper.description_timeout_seconds,
                JobKind.PRIMARY_IMAGE.value: sweeper.primary_image_timeout_seconds,
                JobKind.VARIANT_IMAGE.value: sweeper.variant_image_timeout_seconds,
                JobKind.STORYBOARD.value: sweeper.storyboard_timeout_seconds,
                JobKind.VIDEO_JOB.value: settings.video_timeout_seconds,
            },
        )


class TaskDescriptorStore:
    """Serialized read-modify-write facade over a descriptor backend."""

    def __init__(
        self,
        backend: DescriptorBackend,
        *,
        timeouts: DescriptorTimeouts | None = None,
        clock: Callable[[], datetime] = utc_now,
        listener: DescriptorListener | None = None,
    ) -> None:
        self.backend = backend
        self.timeouts = timeouts or DescriptorTimeouts()
        self.clock = clock
        self.listener = listener
        self._lock = threading.RLock()

    def begin(self, entity_id: str, kind: JobKind | str) -> TaskDescriptor:
        """Write a fresh descriptor, replacing any previous one for the same key."""

        descriptor = TaskDescriptor(
            entity_id=entity_id,
            kind=_kind_value(kind),
            started_at=self.clock(),
        )
        with self._lock:
            current = [
                item for item in self.backend.read_descriptors() if item.key != descriptor.key
            ]
            current.append(descriptor)
            self.backend.write_descriptors(current)
        self._emit("written", descriptor)
        return descriptor

    def finish(self, entity_id: str, kind: JobKind | str) -> bool:
        """Remove the descriptor for one key; returns False if none existed."""

        key = (entity_id, _kind_value(kind))
        with self._lock:
            current = self.backend.read_descriptors()
            removed = [item for item in current if item.key == key]
            if not removed:
                return False
            self.backend.write_descriptors([item for item in current if item.key != key])
        for descriptor in removed:
            self._emit("removed", descriptor)
        return True

    def all(self) -> list[TaskDescriptor]:
        with self._lock:
            return self.backend.read_descriptors()

    def active(self, kind: JobKind | str | None = None) -> list[TaskDescriptor]:
        """Descriptors younger than their kind's timeout."""

        now = self.clock()
        wanted = None if kind is None else _kind_value(kind)
        return [
            item
            for item in self.all()
            if not self._is_expired(item, now) and (wanted is None or item.kind == wanted)
        ]

    def is_active(self, entity_id: str, kind: JobKind | str) -> bool:
        key = (entity_id, _kind_value(kind))
        return any(item.key == key for item in self.active())

    def expired(self, now: datetime | None = None) -> list[TaskDescriptor]:
        moment = now or self.clock()
        return [item for item in self.all() if self._is_expired(item, moment)]

    def purge_expired(self) -> list[TaskDescriptor]:
        """Drop orphaned descriptors and return them."""

        now = self.clock()
        with self._lock:
            current = self.backend.read_descriptors()
            expired = [item for item in current if self._is_expired(item, now)]
            if not expired:
                return []
            self.backend.write_descriptors(
                [item for item in current if not self._is_expired(item, now)],
            )
        for descriptor in expired:
            logger.warning(
                "Descriptor expired: entity=%s kind=%s started_at=%s",
                descriptor.entity_id,
                descriptor.kind,
                descriptor.started_at.isoformat(),
            )
            self._emit("expired", descriptor)
        return expired

    def clear(self) -> int:
        with self._lock:
            count = len(self.backend.read_descriptors())
            self.backend.write_descriptors([])
        return count

    def _is_expired(self, descriptor: TaskDescriptor, now: datetime) -> bool:
        return descriptor.age(now) >= self.timeouts.for_kind(descriptor.kind)

    def _emit(self, event: str, descriptor: TaskDescriptor) -> None:
        if self.listener is not None:
            self.listener(event, descriptor)


def _kind_value(kind: JobKind | str) -> str:
    return kind.value if isinstance(kind, JobKind) else kind
