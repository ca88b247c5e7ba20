"""Controllers for generation CLI commands."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from scene_studio.config import Settings
from scene_studio.orchestrator.backend import EchoGenerationApi, HttpGenerationApi
from scene_studio.orchestrator.backend.base import RemoteGenerationApi
from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.contracts import ProjectDocument, read_project, write_project
from scene_studio.orchestrator.descriptors import DescriptorTimeouts, TaskDescriptorStore
from scene_studio.orchestrator.models import RunSummary
from scene_studio.orchestrator.notifications import (
    CollectingNotificationSink,
    FanOutNotificationSink,
    LoggingNotificationSink,
    NotificationLevel,
)
from scene_studio.orchestrator.poller import PollOutcomeKind
from scene_studio.orchestrator.repository import SqliteDescriptorBackend
from scene_studio.orchestrator.services import GenerationOrchestrator
from scene_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

GENERATION_TARGETS = ("storyboards", "videos", "assets")


@dataclass(slots=True)
class GenerateCommand:
    """CLI input for a batch generation run."""

    target: str
    project_path: Path
    db_path: Path | None
    echo: bool = False
    wait: bool = True


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for restart recovery."""

    project_path: Path
    db_path: Path | None
    echo: bool = False


@dataclass(slots=True)
class TasksCommand:
    """CLI input for descriptor inspection and sweeping."""

    db_path: Path | None


@dataclass(slots=True)
class _Session:
    orchestrator: GenerationOrchestrator
    collected: CollectingNotificationSink


class GenerationCliController:
    """Wires settings, storage and backends for one CLI invocation."""

    def generate(self, command: GenerateCommand) -> list[str]:
        if command.target not in GENERATION_TARGETS:
            raise ValueError(f"Unknown generation target: {command.target}")
        settings = _settings(command.db_path, echo=command.echo)
        document = read_project(command.project_path)
        ctx = RunContext()

        async def _run(session: _Session) -> list[str]:
            operation = _operation(session.orchestrator, command.target)
            summary = await operation(ctx)
            lines = _summary_lines(command.target, summary)
            if ctx.cancelled:
                lines.append(f"Run cancelled: {ctx.cancellation.reason}")
            if command.target == "videos" and command.wait:
                lines.extend(await _wait_lines(session.orchestrator))
            return lines

        with _signal_handlers(ctx):
            lines = self._with_session(
                settings,
                document,
                command.project_path,
                echo=command.echo,
                body=_run,
            )
        return lines

    def resume(self, command: ResumeCommand) -> list[str]:
        settings = _settings(command.db_path, echo=command.echo)
        document = read_project(command.project_path)

        async def _run(session: _Session) -> list[str]:
            resumed = await session.orchestrator.resume()
            lines = [f"Resumed polling: {len(resumed)} shot(s)"]
            lines.extend(f"  {shot_id}" for shot_id in resumed)
            lines.extend(await _wait_lines(session.orchestrator))
            return lines

        return self._with_session(
            settings,
            document,
            command.project_path,
            echo=command.echo,
            body=_run,
        )

    def list_tasks(self, command: TasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _descriptor_store(settings) as descriptors:
            now = utc_now()
            active = {item.key for item in descriptors.active()}
            items = descriptors.all()
        if not items:
            return ["No in-flight tasks."]
        lines = [f"In-flight tasks: {len(items)}"]
        for item in items:
            state = "active" if item.key in active else "expired"
            lines.append(
                f"  {item.entity_id} kind={item.kind} "
                f"age={int(item.age(now).total_seconds())}s {state}",
            )
        return lines

    def sweep_tasks(self, command: TasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _descriptor_store(settings) as descriptors:
            expired = descriptors.purge_expired()
        return [f"Expired tasks removed: {len(expired)}"]

    def _with_session(
        self,
        settings: Settings,
        document: ProjectDocument,
        project_path: Path,
        *,
        echo: bool,
        body: Callable[[_Session], Awaitable[list[str]]],
    ) -> list[str]:
        store = document.to_store()
        with _descriptor_store(settings) as descriptors:

            async def _main() -> list[str]:
                collected = CollectingNotificationSink()
                api = _build_api(settings, echo=echo)
                orchestrator = GenerationOrchestrator(
                    api=api,
                    store=store,
                    descriptors=descriptors,
                    notifications=FanOutNotificationSink(LoggingNotificationSink(), collected),
                    settings=settings,
                )
                orchestrator.sweeper.start()
                try:
                    lines = await body(_Session(orchestrator, collected))
                finally:
                    await orchestrator.aclose()
                    if isinstance(api, HttpGenerationApi):
                        await api.aclose()
                return lines + _notification_lines(collected)

            try:
                return asyncio.run(_main())
            finally:
                document.refresh_from(store)
                write_project(project_path, document)
                logger.info("Project saved: %s", project_path)


def _settings(db_path: Path | None, *, echo: bool) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    if echo:
        # Echo runs are local; shrink the poll interval so they finish quickly.
        settings.poller.interval_seconds = min(settings.poller.interval_seconds, 0.05)
    else:
        settings.validate_for_http()
    return settings


def _build_api(settings: Settings, *, echo: bool) -> RemoteGenerationApi:
    if echo:
        return EchoGenerationApi()
    return HttpGenerationApi(settings.api)


def _operation(
    orchestrator: GenerationOrchestrator,
    target: str,
) -> Callable[[RunContext], Awaitable[RunSummary]]:
    return {
        "storyboards": orchestrator.generate_storyboards,
        "videos": orchestrator.generate_videos,
        "assets": orchestrator.generate_assets,
    }[target]


def _summary_lines(target: str, summary: RunSummary) -> list[str]:
    lines = [
        f"Generation summary ({target}): "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"aborted={'yes' if summary.aborted else 'no'} reconciled={summary.reconciled}",
    ]
    if summary.failed_entity_ids:
        lines.append("Failed: " + ", ".join(summary.failed_entity_ids))
    return lines


async def _wait_lines(orchestrator: GenerationOrchestrator) -> list[str]:
    outcomes = await orchestrator.wait_for_polls()
    if not outcomes:
        return []
    counts = {kind: 0 for kind in PollOutcomeKind}
    for outcome in outcomes:
        counts[outcome.kind] += 1
    pending = [item.entity_id for item in outcomes if item.kind == PollOutcomeKind.TIMEOUT]
    lines = [
        "Video polling: "
        f"completed={counts[PollOutcomeKind.COMPLETED]} "
        f"failed={counts[PollOutcomeKind.FAILED]} "
        f"unknown={counts[PollOutcomeKind.TIMEOUT]}",
    ]
    if pending:
        lines.append("Still running remotely, resume later: " + ", ".join(pending))
    return lines


def _notification_lines(collected: CollectingNotificationSink) -> list[str]:
    errors = collected.of_level(NotificationLevel.ERROR)
    return [f"[{item.title}] {item.message}" for item in errors]


@contextmanager
def _descriptor_store(settings: Settings) -> Iterator[TaskDescriptorStore]:
    backend = SqliteDescriptorBackend(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    backend.init_schema()
    try:
        yield TaskDescriptorStore(backend, timeouts=DescriptorTimeouts.from_settings(settings))
    finally:
        backend.close()


@contextmanager
def _signal_handlers(ctx: RunContext) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative cancel of the run."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        ctx.cancel(reason=name)

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        logger.debug("Signal handlers not installed outside the main thread")
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
