"""Single owner of the canonical entity collections.

Asynchronous completions race to update the same collection, so callers
never write back an entity they captured earlier. They hand the store a
partial update (or a function computing one from the current entity) and
the store applies it to the latest snapshot under one lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any, Protocol

from scene_studio.orchestrator.entities import Character, Collection, Entity, Location, Shot
from scene_studio.orchestrator.models import TaskDescriptor

logger = logging.getLogger(__name__)

MergeFn = Callable[[Entity], dict[str, Any]]
ChangeListener = Callable[[Collection, Entity], None]


class EntityStore(Protocol):
    """Read-snapshot / partial-update interface used by the engine."""

    def get_snapshot(self, collection: Collection) -> list[Entity]:
        """Return the current entities of one collection in order."""

    def get(self, entity_id: str) -> Entity | None:
        """Return the current version of one entity."""

    def apply_update(self, entity_id: str, **fields: Any) -> Entity | None:
        """Merge ``fields`` into the latest version of the entity."""

    def merge(self, entity_id: str, fn: MergeFn) -> Entity | None:
        """Compute a partial update from the latest entity and apply it."""


class InMemoryEntityStore:
    """Lock-serialized entity collections with in-progress indicators."""

    def __init__(
        self,
        *,
        shots: Iterable[Shot] = (),
        characters: Iterable[Character] = (),
        locations: Iterable[Location] = (),
        listener: ChangeListener | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._collections: dict[Collection, list[Entity]] = {
            Collection.SHOTS: list(shots),
            Collection.CHARACTERS: list(characters),
            Collection.LOCATIONS: list(locations),
        }
        self._in_progress: set[tuple[str, str]] = set()
        self.listener = listener

    def get_snapshot(self, collection: Collection) -> list[Entity]:
        with self._lock:
            return list(self._collections[collection])

    def get(self, entity_id: str) -> Entity | None:
        with self._lock:
            located = self._locate(entity_id)
            if located is None:
                return None
            collection, index = located
            return self._collections[collection][index]

    def apply_update(self, entity_id: str, **fields: Any) -> Entity | None:
        return self.merge(entity_id, lambda _current: fields)

    def merge(self, entity_id: str, fn: MergeFn) -> Entity | None:
        with self._lock:
            located = self._locate(entity_id)
            if located is None:
                logger.warning("Update dropped: entity %s no longer exists", entity_id)
                return None
            collection, index = located
            current = self._collections[collection][index]
            fields = fn(current)
            if not fields:
                return current
            updated = replace(current, **fields)
            self._collections[collection][index] = updated
        if self.listener is not None:
            self.listener(collection, updated)
        return updated

    def mark_in_progress(self, entity_id: str, kind: str) -> None:
        with self._lock:
            self._in_progress.add((entity_id, kind))

    def clear_in_progress(self, entity_id: str, kind: str) -> None:
        with self._lock:
            self._in_progress.discard((entity_id, kind))

    def in_progress(self, kind: str | None = None) -> set[str]:
        """Entity ids currently showing an in-progress indicator."""

        with self._lock:
            return {
                entity_id
                for entity_id, item_kind in self._in_progress
                if kind is None or item_kind == kind
            }

    def restore_in_progress(self, descriptors: Iterable[TaskDescriptor]) -> None:
        """Rebuild indicators from durable descriptors after a restart."""

        with self._lock:
            self._in_progress = {descriptor.key for descriptor in descriptors}

    def _locate(self, entity_id: str) -> tuple[Collection, int] | None:
        for collection, entities in self._collections.items():
            for index, entity in enumerate(entities):
                if entity.id == entity_id:
                    return collection, index
        return None
