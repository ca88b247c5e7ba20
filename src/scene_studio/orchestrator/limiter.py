"""FIFO concurrency limiter shared by orchestration lanes."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Bounds simultaneous holders of one job class.

    ``release`` hands the slot straight to the oldest waiter, so a caller that
    arrives while others are queued never overtakes them.
    """

    def __init__(self, limit: int, *, name: str = "generation") -> None:
        if limit < 1:
            raise ValueError(f"Limiter {name!r} needs a limit >= 1, got {limit}")
        self.limit = limit
        self.name = name
        self._active = 0
        self._peak = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def peak(self) -> int:
        """Highest number of simultaneous holders observed."""

        return self._peak

    async def acquire(self) -> None:
        if self._active < self.limit and not self._waiters:
            self._take()
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; pass it on.
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError(f"Limiter {self.name!r} released more times than acquired")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def _take(self) -> None:
        self._active += 1
        if self._active > self._peak:
            self._peak = self._active
            logger.debug("Limiter %s peak=%d/%d", self.name, self._peak, self.limit)
