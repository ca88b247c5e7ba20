"""Project file contract: one JSON document holding every entity collection."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from scene_studio.orchestrator.entities import Character, Collection, Location, Shot
from scene_studio.orchestrator.entity_store import InMemoryEntityStore

PROJECT_SCHEMA_VERSION = 1


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


@dataclass(slots=True)
class ProjectDocument:
    """Serializable project: shots, characters and locations."""

    title: str = ""
    shots: list[Shot] = field(default_factory=list)
    characters: list[Character] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "schema_version": PROJECT_SCHEMA_VERSION,
            "title": self.title,
            "shots": [shot.to_dict() for shot in self.shots],
            "characters": [character.to_dict() for character in self.characters],
            "locations": [location.to_dict() for location in self.locations],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProjectDocument:
        version = raw.get("schema_version", PROJECT_SCHEMA_VERSION)
        if version != PROJECT_SCHEMA_VERSION:
            raise ValueError(f"Unsupported project schema_version: {version}")
        known = {"schema_version", "title", "shots", "characters", "locations"}
        return cls(
            title=str(raw.get("title", "")),
            shots=[Shot.from_dict(item) for item in raw.get("shots") or ()],
            characters=[Character.from_dict(item) for item in raw.get("characters") or ()],
            locations=[Location.from_dict(item) for item in raw.get("locations") or ()],
            extra={key: value for key, value in raw.items() if key not in known},
        )

    def to_store(self) -> InMemoryEntityStore:
        return InMemoryEntityStore(
            shots=self.shots,
            characters=self.characters,
            locations=self.locations,
        )

    def refresh_from(self, store: InMemoryEntityStore) -> None:
        """Copy the store's current collections back into the document."""

        self.shots = [
            item for item in store.get_snapshot(Collection.SHOTS) if isinstance(item, Shot)
        ]
        self.characters = [
            item
            for item in store.get_snapshot(Collection.CHARACTERS)
            if isinstance(item, Character)
        ]
        self.locations = [
            item for item in store.get_snapshot(Collection.LOCATIONS) if isinstance(item, Location)
        ]


def read_project(path: Path) -> ProjectDocument:
    return ProjectDocument.from_dict(load_json(path))


def write_project(path: Path, document: ProjectDocument) -> None:
    write_json(path, document.to_dict())
