"""Deterministic in-process generation backend for tests and dry runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from scene_studio.orchestrator.errors import PermanentRequestError, TransientRemoteError
from scene_studio.orchestrator.models import GenerationOutput, JobHandle, JobKind, PollResponse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EchoScript:
    """Scripted behaviour for one entity (or the default for all)."""

    failures_before_success: int = 0
    permanent: bool = False
    poll_statuses: tuple[str, ...] = ("queued", "processing", "completed")
    result_url: str | None = None
    latency_seconds: float = 0.0


@dataclass(slots=True)
class EchoCall:
    kind: JobKind
    entity_id: str
    attempt: int


@dataclass(slots=True)
class _PollScript:
    entity_id: str
    statuses: list[str]
    result_url: str
    polls: int = 0


class EchoGenerationApi:
    """Fake remote API that echoes entities back as results.

    Video submissions return a handle whose status follows the entity's
    ``poll_statuses``; the last status repeats once the list runs out.
    """

    def __init__(
        self,
        *,
        scripts: dict[str, EchoScript] | None = None,
        default: EchoScript | None = None,
        async_kinds: frozenset[JobKind] = frozenset({JobKind.VIDEO_JOB}),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.scripts = scripts or {}
        self.default = default or EchoScript()
        self.async_kinds = async_kinds
        self.sleep = sleep
        self.calls: list[EchoCall] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self._attempts: dict[tuple[str, JobKind], int] = {}
        self._jobs: dict[str, _PollScript] = {}
        self._job_counter = 0

    def script_for(self, entity_id: str) -> EchoScript:
        return self.scripts.get(entity_id, self.default)

    async def submit(self, kind: JobKind, payload: dict[str, Any]) -> GenerationOutput | JobHandle:
        entity_id = str(payload["entity_id"])
        script = self.script_for(entity_id)
        attempt = self._attempts.get((entity_id, kind), 0) + 1
        self._attempts[(entity_id, kind)] = attempt
        self.calls.append(EchoCall(kind=kind, entity_id=entity_id, attempt=attempt))

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await self.sleep(script.latency_seconds)
        finally:
            self.in_flight -= 1

        if attempt <= script.failures_before_success:
            if script.permanent:
                raise PermanentRequestError(f"400 Bad Request: invalid payload for {entity_id}")
            raise TransientRemoteError(f"503 Service Unavailable for {entity_id}")

        if kind in self.async_kinds:
            self._job_counter += 1
            external_id = f"echo-{entity_id}-{self._job_counter}"
            self._jobs[external_id] = _PollScript(
                entity_id=entity_id,
                statuses=list(script.poll_statuses),
                result_url=script.result_url or f"echo://video/{entity_id}/{self._job_counter}",
            )
            logger.debug("Echo job accepted: %s", external_id)
            return JobHandle(external_id=external_id, provider_tag="echo")

        if kind == JobKind.DESCRIPTION:
            name = payload.get("name") or payload.get("label") or entity_id
            return GenerationOutput(value=f"Echo description of {name}")
        url = script.result_url or f"echo://{kind.value}/{entity_id}/{attempt}"
        return GenerationOutput(value=url, raw={"imageUrl": url})

    async def poll_status(self, handle: JobHandle) -> PollResponse:
        job = self._jobs.get(handle.external_id)
        if job is None:
            raise PermanentRequestError(f"404 Not Found: unknown task {handle.external_id}")
        index = min(job.polls, len(job.statuses) - 1)
        job.polls += 1
        status = job.statuses[index]
        payload: dict[str, Any] = {"status": status}
        if status in {"completed", "succeeded"}:
            payload["video_url"] = job.result_url
        elif status in {"failed", "error"}:
            payload["error"] = f"Echo job {handle.external_id} failed"
        return PollResponse(status=status, payload=payload)

    def attempts(self, entity_id: str, kind: JobKind) -> int:
        return self._attempts.get((entity_id, kind), 0)

    def polls(self, external_id: str) -> int:
        job = self._jobs.get(external_id)
        return 0 if job is None else job.polls
