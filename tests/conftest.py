"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from scene_studio.orchestrator.descriptors import (
    DescriptorTimeouts,
    InMemoryDescriptorBackend,
    TaskDescriptorStore,
)
from scene_studio.orchestrator.entities import Character, Costume, Location, Shot
from scene_studio.orchestrator.models import TaskDescriptor


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class DescriptorRecorder:
    """Descriptor listener keeping (event, entity_id, kind) in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, str]] = []

    def __call__(self, event: str, descriptor: TaskDescriptor) -> None:
        self.events.append((event, descriptor.entity_id, descriptor.kind))

    def index(self, event: str, entity_id: str) -> int:
        for position, (name, item_id, _) in enumerate(self.events):
            if name == event and item_id == entity_id:
                return position
        raise AssertionError(f"No {event} event for {entity_id}: {self.events}")

    def cycles(self, entity_id: str) -> list[str]:
        return [name for name, item_id, _ in self.events if item_id == entity_id]


async def instant_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recorder() -> DescriptorRecorder:
    return DescriptorRecorder()


@pytest.fixture()
def descriptors(clock: FakeClock, recorder: DescriptorRecorder) -> TaskDescriptorStore:
    return TaskDescriptorStore(
        InMemoryDescriptorBackend(),
        timeouts=DescriptorTimeouts(
            seconds_by_kind={"description": 60, "storyboard": 240, "video_job": 600},
        ),
        clock=clock,
        listener=recorder,
    )


def make_shots() -> list[Shot]:
    """Five shots: three at the harbor, one at the market, one without a location."""

    return [
        Shot(id="s1", shot_number=1, location_name="Harbor", description="Boat arrives"),
        Shot(id="s2", shot_number=2, location_name="Harbor ", description="Crew unloads"),
        Shot(id="s3", shot_number=3, location_name="Market", description="Crowd"),
        Shot(id="s4", shot_number=4, location_name="Harbor", description="Sunset"),
        Shot(id="s5", shot_number=5, location_name="", description="Title card"),
    ]


def make_cast() -> tuple[list[Character], list[Location]]:
    characters = [
        Character(
            id="c1",
            name="Mara",
            costumes=(
                Costume(id="c1-coat", label="Winter coat"),
                Costume(id="c1-gown", label="Ball gown"),
            ),
        ),
        Character(id="c2", name="Tomas"),
    ]
    locations = [Location(id="l1", name="Harbor"), Location(id="l2", name="Market")]
    return characters, locations
