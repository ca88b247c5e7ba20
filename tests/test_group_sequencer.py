from __future__ import annotations

import asyncio
from dataclasses import dataclass

import allure

from conftest import DescriptorRecorder, make_shots
from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.limiter import ConcurrencyLimiter
from scene_studio.orchestrator.models import JobKind, RetryOutcome, Success, WorkItem
from scene_studio.orchestrator.retry import RetryExecutor
from scene_studio.orchestrator.sequencer import GroupSequencer, partition

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Group Sequencer"),
]


@dataclass(frozen=True)
class Item:
    id: str
    group: str


def test_partition_keeps_first_seen_order() -> None:
    shots = make_shots()

    groups = partition(shots, lambda shot: shot.group_key)

    assert list(groups) == ["Harbor", "Market", "__solo_s5"]
    assert [shot.id for shot in groups["Harbor"]] == ["s1", "s2", "s4"]


def test_five_entities_in_two_groups_all_succeed_in_group_order() -> None:
    entities = [
        Item("a1", "A"),
        Item("b1", "B"),
        Item("a2", "A"),
        Item("b2", "B"),
        Item("a3", "A"),
    ]
    started: list[str] = []

    async def process(entity: Item) -> RetryOutcome:
        started.append(entity.id)
        return Success(value=entity.id, attempts=1)

    async def scenario():
        sequencer: GroupSequencer[Item] = GroupSequencer(ConcurrencyLimiter(3))
        return await sequencer.run(entities, lambda item: item.group, process, RunContext())

    result = asyncio.run(scenario())

    assert result.summary.succeeded == 5
    assert result.summary.failed == 0
    assert not result.summary.aborted
    assert [item for item in started if item.startswith("a")] == ["a1", "a2", "a3"]
    assert [item for item in started if item.startswith("b")] == ["b1", "b2"]


def test_next_descriptor_never_written_before_previous_removed(
    descriptors: TaskDescriptorStore,
    recorder: DescriptorRecorder,
) -> None:
    shots = make_shots()
    executor = RetryExecutor(descriptors, max_attempts=1)

    async def process(shot) -> RetryOutcome:
        async def job() -> str:
            for _ in range(3):
                await asyncio.sleep(0)
            return shot.id

        return await executor.run(
            WorkItem(shot.id, JobKind.STORYBOARD, shot.group_key),
            job,
            RunContext(),
        )

    async def scenario():
        sequencer = GroupSequencer(ConcurrencyLimiter(1))
        return await sequencer.run(shots, lambda shot: shot.group_key, process, RunContext())

    asyncio.run(scenario())

    for earlier, later in (("s1", "s2"), ("s2", "s4")):
        assert recorder.index("removed", earlier) < recorder.index("written", later)


def test_lanes_share_the_limiter() -> None:
    entities = [Item(f"e{index}", f"g{index}") for index in range(6)]
    in_flight = 0
    highest = 0

    async def process(entity: Item) -> RetryOutcome:
        nonlocal in_flight, highest
        in_flight += 1
        highest = max(highest, in_flight)
        for _ in range(3):
            await asyncio.sleep(0)
        in_flight -= 1
        return Success(value=entity.id, attempts=1)

    async def scenario() -> int:
        limiter = ConcurrencyLimiter(2)
        await GroupSequencer(limiter).run(
            entities,
            lambda item: item.group,
            process,
            RunContext(),
        )
        return limiter.peak

    peak = asyncio.run(scenario())

    assert highest == 2
    assert peak == 2


def test_cancellation_stops_lanes_and_marks_run_aborted() -> None:
    ctx = RunContext()
    entities = [Item("a1", "A"), Item("a2", "A"), Item("a3", "A")]
    processed: list[str] = []

    async def process(entity: Item) -> RetryOutcome:
        processed.append(entity.id)
        if entity.id == "a1":
            ctx.cancel()
        return Success(value=entity.id, attempts=1)

    async def scenario():
        limiter = ConcurrencyLimiter(1)
        result = await GroupSequencer(limiter).run(entities, lambda item: item.group, process, ctx)
        return result, limiter.active

    result, active = asyncio.run(scenario())

    # The in-flight job finishes; nothing new is dispatched.
    assert processed == ["a1"]
    assert result.summary.succeeded == 1
    assert result.skipped == ["a2", "a3"]
    assert result.summary.aborted
    assert active == 0


def test_cancellation_observed_after_acquire_releases_the_slot() -> None:
    ctx = RunContext()
    entities = [Item("a1", "A"), Item("b1", "B")]
    processed: list[str] = []

    async def process(entity: Item) -> RetryOutcome:
        processed.append(entity.id)
        await asyncio.sleep(0)
        ctx.cancel()
        return Success(value=entity.id, attempts=1)

    async def scenario():
        limiter = ConcurrencyLimiter(1)
        result = await GroupSequencer(limiter).run(entities, lambda item: item.group, process, ctx)
        return result, limiter.active

    result, active = asyncio.run(scenario())

    assert processed == ["a1"]
    assert result.skipped == ["b1"]
    assert active == 0
