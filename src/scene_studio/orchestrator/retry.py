"""Bounded-attempt executor shared by the main sweep and the review pass."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.models import (
    Cancelled,
    Exhausted,
    RetryOutcome,
    Success,
    WorkItem,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]

DEFAULT_MAX_ATTEMPTS = 3


class RetryExecutor:
    """Runs one job with up to ``max_attempts`` tries.

    Every error class is retried the same way. Each attempt is bracketed by a
    descriptor write and removal so that a crash mid-attempt leaves a durable
    trace for the expiry sweeper.
    """

    def __init__(
        self,
        descriptors: TaskDescriptorStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.descriptors = descriptors
        self.max_attempts = max_attempts

    async def run(self, item: WorkItem, job: JobFn, ctx: RunContext) -> RetryOutcome:
        last_error: BaseException | None = None
        item.status = WorkItemStatus.RUNNING
        while item.attempts_made < self.max_attempts:
            if item.attempts_made > 0 and ctx.cancelled:
                item.status = WorkItemStatus.CANCELLED
                logger.info(
                    "Retry loop stopped by cancellation: entity=%s kind=%s attempts=%d",
                    item.entity_id,
                    item.kind.value,
                    item.attempts_made,
                )
                return Cancelled(attempts=item.attempts_made)

            item.attempts_made += 1
            self.descriptors.begin(item.entity_id, item.kind)
            try:
                value = await job()
            except Exception as error:  # noqa: BLE001
                last_error = error
                if item.attempts_made < self.max_attempts:
                    logger.warning(
                        "Attempt %d/%d failed for %s/%s, retrying: %s",
                        item.attempts_made,
                        self.max_attempts,
                        item.entity_id,
                        item.kind.value,
                        error,
                    )
                continue
            finally:
                self.descriptors.finish(item.entity_id, item.kind)

            item.status = WorkItemStatus.SUCCEEDED
            return Success(value=value, attempts=item.attempts_made)

        item.status = WorkItemStatus.EXHAUSTED
        if last_error is None:
            raise RuntimeError("Retry loop ended without an attempt")
        logger.warning(
            "Attempts exhausted for %s/%s after %d tries: %s",
            item.entity_id,
            item.kind.value,
            item.attempts_made,
            last_error,
        )
        return Exhausted(last_error=last_error, attempts=item.attempts_made)
