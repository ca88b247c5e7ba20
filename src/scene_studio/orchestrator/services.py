"""Use-case services: batch and single-entity generation runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from scene_studio.config import Settings
from scene_studio.orchestrator.backend.base import (
    PassThroughPayloadBuilder,
    PayloadBuilder,
    RemoteGenerationApi,
)
from scene_studio.orchestrator.context import RunContext
from scene_studio.orchestrator.descriptors import TaskDescriptorStore
from scene_studio.orchestrator.entities import (
    Character,
    Collection,
    Entity,
    Location,
    Shot,
    push_history,
)
from scene_studio.orchestrator.entity_store import InMemoryEntityStore
from scene_studio.orchestrator.errors import MissingResultError, PermanentRequestError
from scene_studio.orchestrator.limiter import ConcurrencyLimiter
from scene_studio.orchestrator.models import (
    NON_TERMINAL_VIDEO_STATUSES,
    Cancelled,
    Exhausted,
    GenerationOutput,
    JobHandle,
    JobKind,
    RetryOutcome,
    RunSummary,
    Success,
    TaskDescriptor,
    VideoStatus,
    WorkItem,
)
from scene_studio.orchestrator.notifications import (
    Notification,
    NotificationLevel,
    NotificationSink,
    failure_notice,
    summary_notice,
)
from scene_studio.orchestrator.poller import AsyncJobPoller, PollOutcome
from scene_studio.orchestrator.reconcile import ReconciliationPass
from scene_studio.orchestrator.retry import JobFn, RetryExecutor
from scene_studio.orchestrator.sequencer import GroupSequencer, SequencerResult
from scene_studio.orchestrator.sweeper import ExpirySweeper
from scene_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

ASSET_KIND_ORDER = (JobKind.DESCRIPTION, JobKind.PRIMARY_IMAGE, JobKind.VARIANT_IMAGE)


@dataclass(slots=True, frozen=True)
class CostumeTarget:
    """Schedulable costume variant; variants of one character share a lane."""

    id: str
    character_id: str

    @property
    def group_key(self) -> str:
        return self.character_id


@dataclass(slots=True, frozen=True)
class AssetLimiters:
    text: ConcurrencyLimiter
    image: ConcurrencyLimiter


class GenerationOrchestrator:
    """Runs generation batches over the project's entity collections.

    Storyboard and video batches are a main sweep (group lanes under a shared
    limiter, bounded retry per entity); asset batches run one pipeline per
    entity. Either way one review pass follows over whatever is still
    incomplete. Video submissions hand their job handle to the poller and
    return immediately.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api: RemoteGenerationApi,
        store: InMemoryEntityStore,
        descriptors: TaskDescriptorStore,
        notifications: NotificationSink,
        settings: Settings | None = None,
        payloads: PayloadBuilder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or Settings()
        self.api = api
        self.store = store
        self.descriptors = descriptors
        self.notifications = notifications
        self.payloads = payloads or PassThroughPayloadBuilder()
        self.clock = clock
        self.poller = AsyncJobPoller(
            api,
            store,
            notifications,
            descriptors=descriptors,
            interval_seconds=self.settings.poller.interval_seconds,
            max_attempts=self.settings.poller.max_attempts,
            sleep=sleep,
            clock=clock,
        )
        self.review = ReconciliationPass(
            descriptors,
            limit=self.settings.concurrency.review_limit,
            max_attempts=self.settings.retry.review_max_attempts,
        )
        self.sweeper = ExpirySweeper(
            descriptors,
            interval_seconds=self.settings.sweeper.interval_seconds,
            on_expired=self._on_descriptor_expired,
            sleep=sleep,
        )
        self._chain_descriptor_listener()

    # ---- batch operations -------------------------------------------------

    async def generate_storyboards(self, ctx: RunContext | None = None) -> RunSummary:
        ctx = ctx or RunContext()
        shots = self._shots()
        main = await self._sweep(
            shots,
            JobKind.STORYBOARD,
            ConcurrencyLimiter(self.settings.concurrency.generation_limit, name="storyboard"),
            lambda shot: self._storyboard_job(shot.id),
            ctx,
        )
        review = await self.review.run(
            store=self.store,
            collections=(Collection.SHOTS,),
            is_incomplete=lambda shot: JobKind.STORYBOARD in shot.missing_kinds(),
            failed_ids=main.summary.failed_entity_ids,
            key_fn=lambda shot: shot.group_key,
            process=lambda shot, executor: self._attempt(
                WorkItem(shot.id, JobKind.STORYBOARD, shot.group_key),
                lambda: self._storyboard_job(shot.id),
                executor,
                ctx,
            ),
            ctx=ctx,
            scope={shot.id for shot in shots},
        )
        return self._finish("Storyboard generation", _combine(main.summary, review, ctx))

    async def generate_videos(self, ctx: RunContext | None = None) -> RunSummary:
        ctx = ctx or RunContext()
        # Shots already waiting on a remote job keep their poll.
        shots = [shot for shot in self._shots() if not _video_in_flight(shot)]
        main = await self._sweep(
            shots,
            JobKind.VIDEO_JOB,
            ConcurrencyLimiter(self.settings.concurrency.generation_limit, name="video"),
            lambda shot: self._video_job(shot.id, ctx),
            ctx,
        )
        review = await self.review.run(
            store=self.store,
            collections=(Collection.SHOTS,),
            is_incomplete=lambda shot: JobKind.VIDEO_JOB in shot.missing_kinds(),
            failed_ids=main.summary.failed_entity_ids,
            key_fn=lambda shot: shot.group_key,
            process=lambda shot, executor: self._attempt(
                WorkItem(shot.id, JobKind.VIDEO_JOB, shot.group_key),
                lambda: self._video_job(shot.id, ctx),
                executor,
                ctx,
            ),
            ctx=ctx,
            scope={shot.id for shot in shots},
        )
        return self._finish("Video submission", _combine(main.summary, review, ctx))

    async def generate_assets(self, ctx: RunContext | None = None) -> RunSummary:
        """One pipeline per character or location: description, image, costumes.

        Pipelines run side by side and each phase waits only for a slot on its
        own limiter (text or image). A failed description ends that entity's
        pipeline. An entity counts as succeeded when every phase it ran did.
        """

        ctx = ctx or RunContext()
        characters = [
            item
            for item in self.store.get_snapshot(Collection.CHARACTERS)
            if isinstance(item, Character) and item.name.strip()
        ]
        locations = [
            item
            for item in self.store.get_snapshot(Collection.LOCATIONS)
            if isinstance(item, Location) and item.name.strip()
        ]
        targets: list[Entity] = [*characters, *locations]
        limiters = AssetLimiters(
            text=ConcurrencyLimiter(self.settings.concurrency.generation_limit, name="text"),
            image=ConcurrencyLimiter(self.settings.concurrency.image_limit, name="image"),
        )
        executor = RetryExecutor(self.descriptors, max_attempts=self.settings.retry.max_attempts)
        main = SequencerResult()
        failed_kinds: dict[str, set[JobKind]] = {}
        logger.info("Asset pipelines start: run=%s entities=%d", ctx.run_id, len(targets))

        async def pipeline(entity: Entity) -> None:
            outcome, failed = await self._asset_pipeline(entity, limiters, executor, ctx)
            if outcome is None:
                main.skipped.append(entity.id)
                return
            main.record(entity.id, outcome)
            if failed:
                failed_kinds[entity.id] = failed

        await asyncio.gather(*(pipeline(entity) for entity in targets))
        if main.skipped:
            main.summary.aborted = True

        review = await self.review.run(
            store=self.store,
            collections=(Collection.CHARACTERS, Collection.LOCATIONS),
            is_incomplete=lambda entity: bool(entity.missing_kinds()),
            failed_ids=set(failed_kinds),
            key_fn=lambda entity: entity.group_key,
            process=lambda entity, executor: self._review_asset(
                entity.id,
                failed_kinds.get(entity.id, set()),
                executor,
                ctx,
            ),
            ctx=ctx,
            scope={entity.id for entity in targets},
        )
        return self._finish("Asset generation", _combine(main.summary, review, ctx))

    # ---- single entity ----------------------------------------------------

    async def generate_single(
        self,
        entity_id: str,
        kind: JobKind,
        *,
        costume_id: str | None = None,
        ctx: RunContext | None = None,
    ) -> RunSummary:
        """User-initiated run for one entity; failures are notified."""

        ctx = ctx or RunContext.single()
        entity = self._require(entity_id)
        if kind == JobKind.VARIANT_IMAGE and costume_id is None:
            raise ValueError("variant_image requires a costume id")
        item = WorkItem(costume_id or entity_id, kind, entity.group_key)
        executor = RetryExecutor(self.descriptors, max_attempts=self.settings.retry.max_attempts)
        job = self._job_for(kind, entity_id, costume_id, ctx)
        outcome = await self._attempt(item, job, executor, ctx)
        summary = RunSummary(aborted=ctx.cancelled)
        summary.record(item.entity_id, outcome)
        if isinstance(outcome, Success) and not ctx.bulk and kind != JobKind.VIDEO_JOB:
            self.notifications.notify(
                Notification(
                    level=NotificationLevel.SUCCESS,
                    title="Generation finished",
                    message=f"{kind.value} ready for {item.entity_id}",
                    entity_id=item.entity_id,
                    kind=kind.value,
                ),
            )
        return summary

    # ---- restart and lifecycle ----------------------------------------------

    async def resume(self) -> list[str]:
        """Restore indicators from durable descriptors and re-attach polls."""

        expired = self.sweeper.tick()
        active = self.descriptors.active()
        self.store.restore_in_progress(active)
        logger.info(
            "Resume: %d active descriptors, %d expired",
            len(active),
            len(expired),
        )
        return self.poller.resume_all()

    async def wait_for_polls(self) -> list[PollOutcome]:
        return await self.poller.wait()

    async def aclose(self) -> None:
        await self.sweeper.stop()
        await self.poller.stop()

    # ---- jobs -------------------------------------------------------------

    def _job_for(
        self,
        kind: JobKind,
        entity_id: str,
        costume_id: str | None,
        ctx: RunContext,
    ) -> JobFn:
        if kind == JobKind.DESCRIPTION:
            return lambda: self._description_job(entity_id)
        if kind == JobKind.PRIMARY_IMAGE:
            return lambda: self._primary_image_job(entity_id)
        if kind == JobKind.VARIANT_IMAGE and costume_id is not None:
            return lambda: self._variant_image_job(entity_id, costume_id)
        if kind == JobKind.STORYBOARD:
            return lambda: self._storyboard_job(entity_id)
        if kind == JobKind.VIDEO_JOB:
            return lambda: self._video_job(entity_id, ctx)
        raise ValueError(f"Unsupported job kind: {kind}")

    async def _description_job(self, entity_id: str) -> str:
        entity = self._require(entity_id)
        output = _expect_output(
            await self.api.submit(
                JobKind.DESCRIPTION,
                self.payloads.build(JobKind.DESCRIPTION, entity),
            ),
            JobKind.DESCRIPTION,
        )
        self.store.apply_update(entity_id, description=output.value)
        return output.value

    async def _primary_image_job(self, entity_id: str) -> str:
        entity = self._require(entity_id)
        output = _expect_output(
            await self.api.submit(
                JobKind.PRIMARY_IMAGE,
                self.payloads.build(JobKind.PRIMARY_IMAGE, entity),
            ),
            JobKind.PRIMARY_IMAGE,
        )
        created_at = self.clock().isoformat()
        self.store.merge(
            entity_id,
            lambda current: {
                "image_url": output.value,
                "image_history": push_history(
                    current.image_history,
                    current.image_url,
                    created_at=created_at,
                    description=current.description,
                ),
            },
        )
        return output.value

    async def _variant_image_job(self, character_id: str, costume_id: str) -> str:
        character = self._require(character_id)
        costume = character.costume(costume_id) if isinstance(character, Character) else None
        if costume is None:
            raise PermanentRequestError(f"Costume {costume_id} not found on {character_id}")
        output = _expect_output(
            await self.api.submit(
                JobKind.VARIANT_IMAGE,
                self.payloads.build(JobKind.VARIANT_IMAGE, character, costume),
            ),
            JobKind.VARIANT_IMAGE,
        )
        created_at = self.clock().isoformat()

        def apply(current: Any) -> dict[str, Any]:
            latest = current.costume(costume_id)
            if latest is None:
                return {}
            history = push_history(
                latest.image_history,
                latest.image_url,
                created_at=created_at,
                description=latest.description,
            )
            return {
                "costumes": current.with_costume(
                    costume_id,
                    image_url=output.value,
                    image_history=history,
                ),
            }

        self.store.merge(character_id, apply)
        return output.value

    async def _storyboard_job(self, shot_id: str) -> str:
        shot = self._require(shot_id)
        output = _expect_output(
            await self.api.submit(
                JobKind.STORYBOARD,
                self.payloads.build(JobKind.STORYBOARD, shot),
            ),
            JobKind.STORYBOARD,
        )
        created_at = self.clock().isoformat()
        self.store.merge(
            shot_id,
            lambda current: {
                "storyboard_url": output.value,
                "storyboard_history": push_history(
                    current.storyboard_history,
                    current.storyboard_url,
                    created_at=created_at,
                    description=current.description,
                ),
            },
        )
        return output.value

    async def _video_job(self, shot_id: str, ctx: RunContext) -> JobHandle:
        self.store.apply_update(shot_id, video_status=VideoStatus.PREPARING, video_error=None)
        shot = self._require(shot_id)
        try:
            result = await self.api.submit(
                JobKind.VIDEO_JOB,
                self.payloads.build(JobKind.VIDEO_JOB, shot),
            )
            if not isinstance(result, JobHandle):
                raise MissingResultError("Video submission returned no job handle")
        except Exception:
            # A preparing shot without a handle must not look in flight.
            self.store.merge(
                shot_id,
                lambda current: (
                    {"video_status": None}
                    if current.video_status == VideoStatus.PREPARING
                    else {}
                ),
            )
            raise
        self.store.apply_update(
            shot_id,
            video_task_id=result.external_id,
            video_provider=result.provider_tag,
            video_status=VideoStatus.QUEUED,
        )
        self.poller.start(shot_id, result, surface_errors=not ctx.bulk)
        return result

    # ---- plumbing -----------------------------------------------------------

    async def _sweep(
        self,
        entities: Sequence[Any],
        kind: JobKind,
        limiter: ConcurrencyLimiter,
        job_for: Callable[[Any], Awaitable[Any]],
        ctx: RunContext,
    ) -> SequencerResult:
        executor = RetryExecutor(self.descriptors, max_attempts=self.settings.retry.max_attempts)
        sequencer: GroupSequencer[Any] = GroupSequencer(limiter)

        def process(entity: Any) -> Awaitable[RetryOutcome]:
            return self._attempt(
                WorkItem(entity.id, kind, entity.group_key),
                lambda: job_for(entity),
                executor,
                ctx,
            )

        return await sequencer.run(entities, lambda entity: entity.group_key, process, ctx)

    async def _attempt(
        self,
        item: WorkItem,
        job: JobFn,
        executor: RetryExecutor,
        ctx: RunContext,
    ) -> RetryOutcome:
        outcome = await executor.run(item, job, ctx)
        if isinstance(outcome, Exhausted):
            if item.kind == JobKind.VIDEO_JOB:
                error = str(outcome.last_error)
                self.store.merge(
                    item.entity_id,
                    lambda current: (
                        {}
                        if _video_in_flight(current)
                        else {"video_status": VideoStatus.FAILED, "video_error": error}
                    ),
                )
            if not ctx.bulk:
                self.notifications.notify(
                    failure_notice(
                        entity_id=item.entity_id,
                        kind=item.kind.value,
                        error=outcome.last_error,
                    ),
                )
        return outcome

    async def _asset_pipeline(
        self,
        entity: Entity,
        limiters: AssetLimiters,
        executor: RetryExecutor,
        ctx: RunContext,
    ) -> tuple[RetryOutcome | None, set[JobKind]]:
        """Run one entity's phases in order.

        Returns the entity's outcome (``None`` when cancellation stopped it
        before anything was dispatched) and the job kinds that failed.
        """

        ran: list[tuple[JobKind, RetryOutcome]] = []
        interrupted = False

        async def phase(item: WorkItem, job: JobFn, limiter: ConcurrencyLimiter) -> bool:
            nonlocal interrupted
            if ctx.cancelled:
                interrupted = True
                return False
            async with limiter.slot():
                if ctx.cancelled:
                    interrupted = True
                    return False
                outcome = await self._attempt(item, job, executor, ctx)
            ran.append((item.kind, outcome))
            return isinstance(outcome, Success)

        described = await phase(
            WorkItem(entity.id, JobKind.DESCRIPTION, entity.group_key),
            lambda: self._description_job(entity.id),
            limiters.text,
        )
        if described:
            await phase(
                WorkItem(entity.id, JobKind.PRIMARY_IMAGE, entity.group_key),
                lambda: self._primary_image_job(entity.id),
                limiters.image,
            )
        if described and not interrupted and isinstance(entity, Character):
            for target in self._costume_targets([entity.id]):
                await phase(
                    WorkItem(target.id, JobKind.VARIANT_IMAGE, target.group_key),
                    self._job_for(JobKind.VARIANT_IMAGE, entity.id, target.id, ctx),
                    limiters.image,
                )
                if interrupted:
                    break

        failed = {kind for kind, outcome in ran if isinstance(outcome, Exhausted)}
        failure = next((outcome for _, outcome in ran if isinstance(outcome, Exhausted)), None)
        if failure is not None:
            return failure, failed
        if not ran:
            return None, failed
        if interrupted or any(isinstance(outcome, Cancelled) for _, outcome in ran):
            return Cancelled(attempts=sum(outcome.attempts for _, outcome in ran)), failed
        return Success(value=None, attempts=sum(outcome.attempts for _, outcome in ran)), failed

    async def _review_asset(
        self,
        entity_id: str,
        failed: set[JobKind],
        executor: RetryExecutor,
        ctx: RunContext,
    ) -> RetryOutcome:
        """Retry an asset's missing phases in order, once each."""

        entity = self._require(entity_id)
        wanted = set(entity.missing_kinds()) | failed
        outcome: RetryOutcome = Success(value=None, attempts=0)
        for kind in ASSET_KIND_ORDER:
            if kind not in wanted:
                continue
            if kind == JobKind.VARIANT_IMAGE:
                for target in self._costume_targets([entity_id]):
                    result = await self._attempt(
                        WorkItem(target.id, kind, target.group_key),
                        self._job_for(kind, entity_id, target.id, ctx),
                        executor,
                        ctx,
                    )
                    if not isinstance(result, Success):
                        outcome = result
                continue
            result = await self._attempt(
                WorkItem(entity_id, kind, entity.group_key),
                self._job_for(kind, entity_id, None, ctx),
                executor,
                ctx,
            )
            if not isinstance(result, Success):
                outcome = result
                if kind == JobKind.DESCRIPTION:
                    break
        return outcome

    def _costume_targets(self, character_ids: Iterable[str]) -> list[CostumeTarget]:
        targets: list[CostumeTarget] = []
        for character_id in character_ids:
            character = self.store.get(character_id)
            if not isinstance(character, Character):
                continue
            targets.extend(
                CostumeTarget(id=costume.id, character_id=character.id)
                for costume in character.costumes
                if costume.needs_image()
            )
        return targets

    def _shots(self) -> list[Shot]:
        return [
            item for item in self.store.get_snapshot(Collection.SHOTS) if isinstance(item, Shot)
        ]

    def _require(self, entity_id: str) -> Entity:
        entity = self.store.get(entity_id)
        if entity is None:
            raise PermanentRequestError(f"Entity {entity_id} not found")
        return entity

    def _finish(self, operation: str, summary: RunSummary) -> RunSummary:
        logger.info(
            "%s done: succeeded=%d failed=%d aborted=%s reconciled=%d",
            operation,
            summary.succeeded,
            summary.failed,
            summary.aborted,
            summary.reconciled,
        )
        self.notifications.notify(summary_notice(operation=operation, summary=summary))
        return summary

    def _chain_descriptor_listener(self) -> None:
        previous = self.descriptors.listener

        def listener(event: str, descriptor: TaskDescriptor) -> None:
            if event == "written":
                self.store.mark_in_progress(descriptor.entity_id, descriptor.kind)
            elif event == "removed":
                self.store.clear_in_progress(descriptor.entity_id, descriptor.kind)
            if previous is not None:
                previous(event, descriptor)

        self.descriptors.listener = listener

    def _on_descriptor_expired(self, descriptor: TaskDescriptor) -> None:
        self.store.clear_in_progress(descriptor.entity_id, descriptor.kind)


def _expect_output(result: GenerationOutput | JobHandle, kind: JobKind) -> GenerationOutput:
    if isinstance(result, JobHandle):
        raise PermanentRequestError(f"{kind.value} returned a job handle instead of a result")
    if not result.value:
        raise MissingResultError(f"{kind.value} returned an empty result")
    return result


def _video_in_flight(shot: Any) -> bool:
    return (
        isinstance(shot, Shot)
        and shot.video_status in NON_TERMINAL_VIDEO_STATUSES
        and bool(shot.video_task_id)
    )


def _combine(main: RunSummary, review: SequencerResult, ctx: RunContext) -> RunSummary:
    """Fold the review pass into the main sweep's counters.

    An entity counts as failed once if it is still failing after review.
    """

    summary = RunSummary(
        succeeded=main.succeeded + review.summary.succeeded,
        aborted=ctx.cancelled or main.aborted or review.summary.aborted,
        reconciled=review.summary.reconciled,
    )
    for entity_id in [*main.failed_entity_ids, *review.summary.failed_entity_ids]:
        if entity_id in summary.failed_entity_ids:
            continue
        if isinstance(review.outcomes.get(entity_id), Success):
            continue
        summary.failed_entity_ids.append(entity_id)
    summary.failed = len(summary.failed_entity_ids)
    return summary
