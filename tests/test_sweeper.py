from __future__ import annotations

import asyncio

import allure

from conftest import FakeClock, instant_sleep
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.entities import Character
from scene_studio.orchestrator.entity_store import InMemoryEntityStore
from scene_studio.orchestrator.models import JobKind, TaskDescriptor
from scene_studio.orchestrator.sweeper import ExpirySweeper

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Expiry Sweeper"),
]


def test_tick_removes_expired_and_clears_indicator(
    descriptors: TaskDescriptorStore,
    clock: FakeClock,
) -> None:
    store = InMemoryEntityStore(characters=[Character(id="c1", name="Mara")])
    descriptors.begin("c1", JobKind.DESCRIPTION)
    store.mark_in_progress("c1", JobKind.DESCRIPTION.value)
    expired_seen: list[TaskDescriptor] = []

    def on_expired(descriptor: TaskDescriptor) -> None:
        expired_seen.append(descriptor)
        store.clear_in_progress(descriptor.entity_id, descriptor.kind)

    sweeper = ExpirySweeper(descriptors, on_expired=on_expired)

    clock.advance(30)
    assert sweeper.tick() == []
    assert store.in_progress() == {"c1"}

    clock.advance(30)
    removed = sweeper.tick()

    assert [item.entity_id for item in removed] == ["c1"]
    assert [item.entity_id for item in expired_seen] == ["c1"]
    assert store.in_progress() == set()
    assert descriptors.all() == []


def test_fresh_descriptor_is_kept(descriptors: TaskDescriptorStore, clock: FakeClock) -> None:
    descriptors.begin("s1", JobKind.STORYBOARD)
    clock.advance(239)

    assert ExpirySweeper(descriptors).tick() == []
    assert descriptors.is_active("s1", JobKind.STORYBOARD)


def test_background_loop_purges_until_stopped(
    descriptors: TaskDescriptorStore,
    clock: FakeClock,
) -> None:
    async def scenario() -> int:
        descriptors.begin("c1", JobKind.DESCRIPTION)
        clock.advance(61)
        async with ExpirySweeper(descriptors, interval_seconds=0.0, sleep=instant_sleep):
            for _ in range(5):
                await asyncio.sleep(0)
        return len(descriptors.all())

    assert asyncio.run(scenario()) == 0
