"""Tagged entity variants and their completeness predicates.

Entities are immutable; every change goes through the entity store, which
merges a partial update into the latest snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

from scene_studio.orchestrator.models import NON_TERMINAL_VIDEO_STATUSES, JobKind, VideoStatus


class Collection(str, Enum):
    """Top-level entity collections of a project."""

    SHOTS = "shots"
    CHARACTERS = "characters"
    LOCATIONS = "locations"


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """A previously generated asset kept for rollback."""

    url: str
    created_at: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "created_at": self.created_at, "description": self.description}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HistoryEntry:
        return cls(
            url=str(raw["url"]),
            created_at=str(raw.get("created_at", "")),
            description=str(raw.get("description", "")),
        )


def push_history(
    history: tuple[HistoryEntry, ...],
    previous_url: str | None,
    *,
    created_at: str,
    description: str = "",
) -> tuple[HistoryEntry, ...]:
    """Append the replaced asset to history unless it is already there."""

    if not previous_url or any(entry.url == previous_url for entry in history):
        return history
    entry = HistoryEntry(url=previous_url, created_at=created_at, description=description)
    return (*history, entry)


@dataclass(slots=True, frozen=True)
class Costume:
    """Wardrobe variant of a character."""

    entity_type: ClassVar[str] = "costume"

    id: str
    label: str
    description: str = ""
    image_url: str | None = None
    image_history: tuple[HistoryEntry, ...] = ()

    def needs_image(self) -> bool:
        return bool(self.label.strip()) and not self.image_url

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "image_url": self.image_url,
            "image_history": [entry.to_dict() for entry in self.image_history],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Costume:
        return cls(
            id=str(raw["id"]),
            label=str(raw.get("label", "")),
            description=str(raw.get("description", "")),
            image_url=raw.get("image_url") or None,
            image_history=_history(raw.get("image_history")),
        )


@dataclass(slots=True, frozen=True)
class Character:
    """A recurring character with a reference portrait and costume variants."""

    entity_type: ClassVar[str] = "character"
    collection: ClassVar[Collection] = Collection.CHARACTERS

    id: str
    name: str
    description: str = ""
    image_url: str | None = None
    image_history: tuple[HistoryEntry, ...] = ()
    costumes: tuple[Costume, ...] = ()

    @property
    def group_key(self) -> str:
        return self.id

    def missing_kinds(self) -> tuple[JobKind, ...]:
        missing: list[JobKind] = []
        if not self.description.strip():
            missing.append(JobKind.DESCRIPTION)
        if not self.image_url:
            missing.append(JobKind.PRIMARY_IMAGE)
        if any(costume.needs_image() for costume in self.costumes):
            missing.append(JobKind.VARIANT_IMAGE)
        return tuple(missing)

    def costume(self, costume_id: str) -> Costume | None:
        return next((item for item in self.costumes if item.id == costume_id), None)

    def with_costume(self, costume_id: str, **fields: Any) -> tuple[Costume, ...]:
        return tuple(
            replace(item, **fields) if item.id == costume_id else item for item in self.costumes
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "image_url": self.image_url,
            "image_history": [entry.to_dict() for entry in self.image_history],
            "costumes": [costume.to_dict() for costume in self.costumes],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Character:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            description=str(raw.get("description", "")),
            image_url=raw.get("image_url") or None,
            image_history=_history(raw.get("image_history")),
            costumes=tuple(Costume.from_dict(item) for item in raw.get("costumes") or ()),
        )


@dataclass(slots=True, frozen=True)
class Location:
    """A shooting location with a reference image."""

    entity_type: ClassVar[str] = "location"
    collection: ClassVar[Collection] = Collection.LOCATIONS

    id: str
    name: str
    description: str = ""
    image_url: str | None = None
    image_history: tuple[HistoryEntry, ...] = ()

    @property
    def group_key(self) -> str:
        return self.id

    def missing_kinds(self) -> tuple[JobKind, ...]:
        missing: list[JobKind] = []
        if not self.description.strip():
            missing.append(JobKind.DESCRIPTION)
        if not self.image_url:
            missing.append(JobKind.PRIMARY_IMAGE)
        return tuple(missing)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "image_url": self.image_url,
            "image_history": [entry.to_dict() for entry in self.image_history],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Location:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            description=str(raw.get("description", "")),
            image_url=raw.get("image_url") or None,
            image_history=_history(raw.get("image_history")),
        )


@dataclass(slots=True, frozen=True)
class Shot:
    """One storyboard shot; shots sharing a location name run in order."""

    entity_type: ClassVar[str] = "shot"
    collection: ClassVar[Collection] = Collection.SHOTS

    id: str
    shot_number: int
    location_name: str = ""
    description: str = ""
    characters: tuple[str, ...] = ()
    storyboard_url: str | None = None
    storyboard_history: tuple[HistoryEntry, ...] = ()
    video_url: str | None = None
    video_task_id: str | None = None
    video_provider: str | None = None
    video_status: VideoStatus | None = None
    video_error: str | None = None
    video_history: tuple[HistoryEntry, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def group_key(self) -> str:
        return self.location_name.strip() or f"__solo_{self.id}"

    def missing_kinds(self) -> tuple[JobKind, ...]:
        missing: list[JobKind] = []
        if not self.storyboard_url:
            missing.append(JobKind.STORYBOARD)
        if not self.video_url and self.video_status not in NON_TERMINAL_VIDEO_STATUSES:
            missing.append(JobKind.VIDEO_JOB)
        return tuple(missing)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "shot_number": self.shot_number,
            "location_name": self.location_name,
            "description": self.description,
            "characters": list(self.characters),
            "storyboard_url": self.storyboard_url,
            "storyboard_history": [entry.to_dict() for entry in self.storyboard_history],
            "video_url": self.video_url,
            "video_task_id": self.video_task_id,
            "video_provider": self.video_provider,
            "video_status": self.video_status.value if self.video_status else None,
            "video_error": self.video_error,
            "video_history": [entry.to_dict() for entry in self.video_history],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Shot:
        known = {
            "id",
            "shot_number",
            "location_name",
            "description",
            "characters",
            "storyboard_url",
            "storyboard_history",
            "video_url",
            "video_task_id",
            "video_provider",
            "video_status",
            "video_error",
            "video_history",
        }
        status = raw.get("video_status")
        return cls(
            id=str(raw["id"]),
            shot_number=int(raw.get("shot_number", 0)),
            location_name=str(raw.get("location_name", "")),
            description=str(raw.get("description", "")),
            characters=tuple(str(name) for name in raw.get("characters") or ()),
            storyboard_url=raw.get("storyboard_url") or None,
            storyboard_history=_history(raw.get("storyboard_history")),
            video_url=raw.get("video_url") or None,
            video_task_id=raw.get("video_task_id") or None,
            video_provider=raw.get("video_provider") or None,
            video_status=VideoStatus(status) if status else None,
            video_error=raw.get("video_error") or None,
            video_history=_history(raw.get("video_history")),
            extra={key: value for key, value in raw.items() if key not in known},
        )


Entity = Shot | Character | Location

ENTITY_TYPES: dict[Collection, type[Shot] | type[Character] | type[Location]] = {
    Collection.SHOTS: Shot,
    Collection.CHARACTERS: Character,
    Collection.LOCATIONS: Location,
}


def _history(raw: Any) -> tuple[HistoryEntry, ...]:
    if not raw:
        return ()
    return tuple(HistoryEntry.from_dict(item) for item in raw)
