"""Periodic purge of orphaned task descriptors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.models import TaskDescriptor

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Drops descriptors older than their kind's timeout on every tick.

    Expiry also clears the in-progress indicator through ``on_expired`` even
    though no terminal event was ever observed for that job.
    """

    def __init__(
        self,
        descriptors: TaskDescriptorStore,
        *,
        interval_seconds: float = 5.0,
        on_expired: Callable[[TaskDescriptor], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.descriptors = descriptors
        self.interval_seconds = interval_seconds
        self.on_expired = on_expired
        self.sleep = sleep
        self._task: asyncio.Task[None] | None = None

    def tick(self) -> list[TaskDescriptor]:
        expired = self.descriptors.purge_expired()
        if self.on_expired is not None:
            for descriptor in expired:
                self.on_expired(descriptor)
        return expired

    async def run_forever(self) -> None:
        while True:
            await self.sleep(self.interval_seconds)
            self.tick()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="descriptor-sweeper")
            logger.debug("Descriptor sweeper started, interval=%.1fs", self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("Descriptor sweeper stopped")
        self._task = None

    async def __aenter__(self) -> ExpirySweeper:
        self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()
