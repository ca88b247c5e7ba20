"""One-shot review pass over entities still missing required output."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from collections.abc import Collection as AbstractCollection
from typing import Any

from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.entities import Collection
from scene_studio.orchestrator.entity_store import EntityStore
from scene_studio.orchestrator.limiter import ConcurrencyLimiter
from scene_studio.orchestrator.models import RetryOutcome
from scene_studio.orchestrator.retry import RetryExecutor
from scene_studio.orchestrator.sequencer import GroupSequencer, SequencerResult

logger = logging.getLogger(__name__)

ReviewProcess = Callable[[Any, RetryExecutor], Awaitable[RetryOutcome]]


class ReconciliationPass:
    """Re-dispatches incomplete entities exactly once under a smaller bound.

    The pass owns its own limiter and executor and never calls itself, so a
    shortfall after it is final.
    """

    def __init__(
        self,
        descriptors: TaskDescriptorStore,
        *,
        limit: int = 2,
        max_attempts: int = 1,
    ) -> None:
        self.descriptors = descriptors
        self.limit = limit
        self.max_attempts = max_attempts

    async def run(  # noqa: PLR0913
        self,
        *,
        store: EntityStore,
        collections: Iterable[Collection],
        is_incomplete: Callable[[Any], bool],
        failed_ids: AbstractCollection[str],
        key_fn: Callable[[Any], str],
        process: ReviewProcess,
        ctx: RunContext,
        scope: AbstractCollection[str] | None = None,
    ) -> SequencerResult:
        if ctx.cancelled:
            logger.info("Review pass skipped: run %s was cancelled", ctx.run_id)
            result = SequencerResult()
            result.summary.aborted = True
            return result

        names = tuple(collections)
        snapshot = [entity for name in names for entity in store.get_snapshot(name)]
        targets = [
            entity
            for entity in snapshot
            if (scope is None or entity.id in scope)
            and (entity.id in failed_ids or is_incomplete(entity))
        ]
        if not targets:
            return SequencerResult()

        logger.info(
            "Review pass: run=%s collections=%s incomplete=%d",
            ctx.run_id,
            ",".join(name.value for name in names),
            len(targets),
        )
        executor = RetryExecutor(self.descriptors, max_attempts=self.max_attempts)
        sequencer: GroupSequencer[Any] = GroupSequencer(
            ConcurrencyLimiter(self.limit, name="review"),
        )
        result = await sequencer.run(
            targets,
            key_fn,
            lambda entity: process(entity, executor),
            ctx,
        )
        result.summary.reconciled = len(result.outcomes)
        return result
