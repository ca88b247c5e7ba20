"""Group sequencer: ordered lanes per group, parallel across groups."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.limiter import ConcurrencyLimiter
from scene_studio.orchestrator.models import RetryOutcome, RunSummary

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(slots=True)
class SequencerResult:
    """Per-entity outcomes plus aggregate counters of one sweep."""

    outcomes: dict[str, RetryOutcome] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    summary: RunSummary = field(default_factory=RunSummary)

    def record(self, entity_id: str, outcome: RetryOutcome) -> None:
        self.outcomes[entity_id] = outcome
        self.summary.record(entity_id, outcome)


def partition(
    entities: Iterable[E],
    key_fn: Callable[[E], str],
) -> dict[str, list[E]]:
    """Group entities by key, keeping first-seen group order and member order."""

    groups: dict[str, list[E]] = {}
    for entity in entities:
        groups.setdefault(key_fn(entity), []).append(entity)
    return groups


class GroupSequencer(Generic[E]):
    """Runs one lane per group; a lane never starts entity i+1 before i is done.

    Sequencing governs order inside a group; the shared limiter governs how
    many lanes may have a job in flight at once.
    """

    def __init__(
        self,
        limiter: ConcurrencyLimiter,
        *,
        id_fn: Callable[[Any], str] = lambda entity: entity.id,
    ) -> None:
        self.limiter = limiter
        self.id_fn = id_fn

    async def run(
        self,
        entities: Sequence[E],
        key_fn: Callable[[E], str],
        process: Callable[[E], Awaitable[RetryOutcome]],
        ctx: RunContext,
    ) -> SequencerResult:
        groups = partition(entities, key_fn)
        result = SequencerResult()
        logger.info(
            "Sequencer start: run=%s entities=%d groups=%d limit=%d",
            ctx.run_id,
            len(entities),
            len(groups),
            self.limiter.limit,
        )
        await asyncio.gather(
            *(self._lane(key, members, process, ctx, result) for key, members in groups.items()),
        )
        if result.skipped:
            result.summary.aborted = True
        logger.info(
            "Sequencer done: run=%s succeeded=%d failed=%d skipped=%d",
            ctx.run_id,
            result.summary.succeeded,
            result.summary.failed,
            len(result.skipped),
        )
        return result

    async def _lane(
        self,
        key: str,
        members: list[E],
        process: Callable[[E], Awaitable[RetryOutcome]],
        ctx: RunContext,
        result: SequencerResult,
    ) -> None:
        for index, entity in enumerate(members):
            if ctx.cancelled:
                self._skip(key, members[index:], result)
                return
            await self.limiter.acquire()
            try:
                if ctx.cancelled:
                    self._skip(key, members[index:], result)
                    return
                outcome = await process(entity)
            finally:
                self.limiter.release()
            result.record(self.id_fn(entity), outcome)

    def _skip(self, key: str, remaining: list[E], result: SequencerResult) -> None:
        skipped = [self.id_fn(entity) for entity in remaining]
        logger.info("Lane %s stopped by cancellation, %d left unprocessed", key, len(skipped))
        result.skipped.extend(skipped)
