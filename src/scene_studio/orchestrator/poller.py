"""Polling state machine for video jobs that return a handle.

States run ``preparing|queued -> processing* -> completed|failed``. Every
entity update goes through ``EntityStore.merge`` and is skipped when the
entity's current handle no longer matches the one being polled, so a stale
poll can never overwrite a newer submission.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from scene_studio.orchestrator.backend.base import RemoteGenerationApi
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.entities import Collection, Shot, push_history
from scene_studio.orchestrator.entity_store import EntityStore
from scene_studio.orchestrator.errors import MissingResultError, PollTimeout
from scene_studio.orchestrator.models import (
    NON_TERMINAL_VIDEO_STATUSES,
    JobHandle,
    JobKind,
    PollState,
    VideoStatus,
)
from scene_studio.orchestrator.notifications import (
    Notification,
    NotificationLevel,
    NotificationSink,
    failure_notice,
)
from scene_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"completed", "succeeded", "success"})
FAILURE_STATUSES = frozenset({"failed", "error", "cancelled"})
QUEUED_STATUSES = frozenset({"queued", "pending", "submitted", "waiting"})

# Checked in order; the first non-empty value wins.
RESULT_FIELDS: tuple[tuple[str, ...], ...] = (
    ("video_url",),
    ("output", "video_url"),
    ("result", "url"),
    ("url",),
)
ERROR_FIELDS: tuple[tuple[str, ...], ...] = (
    ("error",),
    ("error", "message"),
    ("message",),
    ("result", "error"),
)


class PollOutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    STALE = "stale"


@dataclass(slots=True, frozen=True)
class PollOutcome:
    entity_id: str
    kind: PollOutcomeKind
    attempts: int
    result_url: str | None = None
    error: str | None = None


def _lookup(payload: dict[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = payload
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def extract_result(payload: dict[str, Any]) -> str | None:
    for path in RESULT_FIELDS:
        value = _lookup(payload, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_error(payload: dict[str, Any]) -> str:
    for path in ERROR_FIELDS:
        value = _lookup(payload, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "Video generation failed"


def displayed_status(raw_status: str) -> VideoStatus:
    """Map any non-terminal remote status onto the displayed state."""

    if raw_status in QUEUED_STATUSES:
        return VideoStatus.QUEUED
    return VideoStatus.PROCESSING


class AsyncJobPoller:
    """Owns one polling task per entity until terminal state or attempt cap."""

    def __init__(
        self,
        api: RemoteGenerationApi,
        store: EntityStore,
        notifications: NotificationSink,
        *,
        descriptors: TaskDescriptorStore | None = None,
        interval_seconds: float = 5.0,
        max_attempts: int = 120,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.api = api
        self.store = store
        self.notifications = notifications
        self.descriptors = descriptors
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.clock = clock
        self._tasks: dict[str, asyncio.Task[PollOutcome]] = {}

    def start(
        self,
        entity_id: str,
        handle: JobHandle,
        *,
        surface_errors: bool = True,
    ) -> asyncio.Task[PollOutcome]:
        """Spawn a polling task; an older task for the same entity is cancelled."""

        previous = self._tasks.get(entity_id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(
            self.poll(entity_id, handle, surface_errors=surface_errors),
            name=f"poll-{entity_id}",
        )
        self._tasks[entity_id] = task
        return task

    async def poll(
        self,
        entity_id: str,
        handle: JobHandle,
        *,
        surface_errors: bool = True,
    ) -> PollOutcome:
        state = PollState(entity_id=entity_id, handle=handle, max_attempts=self.max_attempts)
        if self.descriptors is not None:
            self.descriptors.begin(entity_id, JobKind.VIDEO_JOB)
        logger.info("Polling started: entity=%s task=%s", entity_id, handle.external_id)
        try:
            return await self._poll_loop(state, surface_errors=surface_errors)
        finally:
            if self.descriptors is not None:
                self.descriptors.finish(entity_id, JobKind.VIDEO_JOB)

    async def _poll_loop(self, state: PollState, *, surface_errors: bool) -> PollOutcome:
        while state.attempts_made < state.max_attempts:
            await self.sleep(self.interval_seconds)
            state.attempts_made += 1
            try:
                response = await self.api.poll_status(state.handle)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Poll %d/%d errored for %s: %s",
                    state.attempts_made,
                    state.max_attempts,
                    state.entity_id,
                    error,
                )
                continue

            status = (response.status or "").strip().lower()
            if status in SUCCESS_STATUSES:
                url = extract_result(response.payload)
                if url is None:
                    error_text = str(MissingResultError("Completed job returned no video URL"))
                    return self._fail(state, error_text, surface_errors=surface_errors)
                return self._complete(state, url)
            if status in FAILURE_STATUSES:
                error_text = extract_error(response.payload)
                return self._fail(state, error_text, surface_errors=surface_errors)

            shown = displayed_status(status)
            updated = self.store.merge(
                state.entity_id,
                lambda current: (
                    {"video_status": shown}
                    if _owns(current, state.handle) and current.video_status != shown
                    else {}
                ),
            )
            if updated is None or not _owns(updated, state.handle):
                return self._stale(state)

        return self._time_out(state)

    def _complete(self, state: PollState, url: str) -> PollOutcome:
        created_at = self.clock().isoformat()
        owned = False

        def apply(current: Any) -> dict[str, Any]:
            nonlocal owned
            if not _owns(current, state.handle):
                return {}
            owned = True
            previous = current.video_url if current.video_url != url else None
            return {
                "video_url": url,
                "video_status": VideoStatus.COMPLETED,
                "video_task_id": None,
                "video_provider": None,
                "video_error": None,
                "video_history": push_history(
                    current.video_history,
                    previous,
                    created_at=created_at,
                ),
            }

        self.store.merge(state.entity_id, apply)
        if not owned:
            return self._stale(state)
        logger.info(
            "Video ready: entity=%s attempts=%d url=%s",
            state.entity_id,
            state.attempts_made,
            url,
        )
        self.notifications.notify(
            Notification(
                level=NotificationLevel.SUCCESS,
                title="Video ready",
                message=f"Video for {state.entity_id} is ready",
                entity_id=state.entity_id,
                kind=JobKind.VIDEO_JOB.value,
            ),
        )
        return PollOutcome(
            state.entity_id,
            PollOutcomeKind.COMPLETED,
            state.attempts_made,
            result_url=url,
        )

    def _fail(self, state: PollState, error: str, *, surface_errors: bool) -> PollOutcome:
        owned = False

        def apply(current: Any) -> dict[str, Any]:
            nonlocal owned
            if not _owns(current, state.handle):
                return {}
            owned = True
            return {
                "video_status": VideoStatus.FAILED,
                "video_error": error,
                "video_task_id": None,
                "video_provider": None,
            }

        self.store.merge(state.entity_id, apply)
        if not owned:
            return self._stale(state)
        logger.warning("Video failed: entity=%s error=%s", state.entity_id, error)
        if surface_errors:
            self.notifications.notify(
                failure_notice(
                    entity_id=state.entity_id,
                    kind=JobKind.VIDEO_JOB.value,
                    error=error,
                ),
            )
        return PollOutcome(
            state.entity_id,
            PollOutcomeKind.FAILED,
            state.attempts_made,
            error=error,
        )

    def _stale(self, state: PollState) -> PollOutcome:
        logger.info("Polling abandoned for %s: handle was replaced", state.entity_id)
        return PollOutcome(state.entity_id, PollOutcomeKind.STALE, state.attempts_made)

    def _time_out(self, state: PollState) -> PollOutcome:
        # The handle stays on the entity so a later resume can re-attach.
        timeout = PollTimeout(state.entity_id, state.attempts_made)
        logger.warning("%s; outcome unknown", timeout)
        self.notifications.notify(
            Notification(
                level=NotificationLevel.WARNING,
                title="Video status unknown",
                message=(
                    f"Video for {state.entity_id} is taking longer than expected; "
                    "resume later to keep checking"
                ),
                entity_id=state.entity_id,
                kind=JobKind.VIDEO_JOB.value,
                details={"outcome": "unknown", "attempts": state.attempts_made},
            ),
        )
        return PollOutcome(state.entity_id, PollOutcomeKind.TIMEOUT, state.attempts_made)

    def resume_all(self, *, surface_errors: bool = True) -> list[str]:
        """Re-attach polling for non-terminal shots after a restart.

        A non-terminal shot without a handle failed before submission completed
        and is reset to an unset status instead.
        """

        resumed: list[str] = []
        for shot in self.store.get_snapshot(Collection.SHOTS):
            if shot.video_status not in NON_TERMINAL_VIDEO_STATUSES:
                continue
            if shot.video_task_id:
                handle = JobHandle(shot.video_task_id, shot.video_provider)
                self.start(shot.id, handle, surface_errors=surface_errors)
                resumed.append(shot.id)
                continue
            self.store.merge(
                shot.id,
                lambda current: (
                    {"video_status": None}
                    if current.video_status in NON_TERMINAL_VIDEO_STATUSES
                    and not current.video_task_id
                    else {}
                ),
            )
            logger.info("Cleared stuck video status for %s (no task handle)", shot.id)
        if resumed:
            logger.info("Resumed polling for %d shots", len(resumed))
        return resumed

    async def wait(self) -> list[PollOutcome]:
        """Wait for every polling task, including ones started while waiting."""

        seen: set[asyncio.Task[PollOutcome]] = set()
        outcomes: list[PollOutcome] = []
        while True:
            pending = [task for task in self._tasks.values() if task not in seen]
            if not pending:
                return outcomes
            seen.update(pending)
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, PollOutcome):
                    outcomes.append(result)
                elif isinstance(result, asyncio.CancelledError):
                    continue
                elif isinstance(result, BaseException):
                    raise result

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()


def _owns(entity: Any, handle: JobHandle) -> bool:
    return isinstance(entity, Shot) and entity.video_task_id == handle.external_id
