"""Run-scoped orchestration context and cooperative cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from scene_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


class CancellationController:
    """One-shot stop signal for a single orchestration run.

    Setting it never interrupts a remote call already in flight; lanes only
    consult it before dispatching new work.
    """

    def __init__(self) -> None:
        self._set = False
        self._reason: str | None = None

    @property
    def is_set(self) -> bool:
        return self._set

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "user_requested") -> bool:
        """Set the signal; returns False if it was already set."""

        if self._set:
            return False
        self._set = True
        self._reason = reason
        logger.info("Cancellation requested: %s", reason)
        return True


@dataclass(slots=True)
class RunContext:
    """State owned by exactly one orchestration run."""

    run_id: str = field(default_factory=lambda: uuid4().hex)
    bulk: bool = True
    cancellation: CancellationController = field(default_factory=CancellationController)
    started_at: datetime = field(default_factory=utc_now)

    @classmethod
    def single(cls) -> RunContext:
        """Context for a user-initiated single-entity run (errors are surfaced)."""

        return cls(bulk=False)

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_set

    def cancel(self, reason: str = "user_requested") -> bool:
        return self.cancellation.cancel(reason)
