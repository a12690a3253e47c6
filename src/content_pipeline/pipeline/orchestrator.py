"""
Processing orchestrator.

Drives a content item through its state machine:

    pending -> transcribing -> (diarizing) -> analyzing -> completed
                                              (analysis, embedding)

and is the only writer of processing state. Responsibilities:

1. trigger(): idempotency guard + claim (compare-and-set) + enqueue
2. run(): execute stages in order, persisting each stage's output
3. Stage retry: TransientError is retried with exponential backoff,
   FatalInputError fails the item immediately
4. Failure: write failed / error / failed_stage / attempt+1 and stop; earlier
   stage outputs are kept and a later trigger resumes from the failed stage
5. Post-completion hooks (knowledge graph refresh), best effort

No lock is held across stage calls; the claimed in-flight status is what
keeps a second run from starting.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_graph.repository import KnowledgeGraphRepository

from ..embedding_index import EmbeddingIndex
from ..errors import (
    ContentPipelineError,
    ErrorKind,
    FatalInputError,
    PartialSuccessResult,
    StageError,
    TransientError,
    classify_exception,
)
from ..logging import PipelineTimer, get_logger, get_trace_id, logging_context
from ..models.content_item import (
    IN_FLIGHT_STATUSES,
    STAGE_ORDER,
    ContentItem,
    PipelineStage,
    ProcessingStatus,
    ProcessingStatusView,
    utcnow,
)
from ..models.embedding import OwnerType
from ..repository import ContentItemRepository
from ..stages.base import StageExecutor, StageUpdate
from .queue import ProcessingJob, ProcessingQueue

logger = get_logger(__name__)

PostCompletionHook = Callable[[ContentItem], Awaitable[Any]]

# Stage to resume from when an item is found in an in-flight status
_STATUS_STAGE = {
    ProcessingStatus.TRANSCRIBING: PipelineStage.TRANSCRIPTION,
    ProcessingStatus.DIARIZING: PipelineStage.DIARIZATION,
    ProcessingStatus.ANALYZING: PipelineStage.ANALYSIS,
}


@dataclass
class PipelineRunResult:
    """Outcome of one run() call."""

    content_item_id: str
    final_status: ProcessingStatus | None = None
    stages_run: list[str] = field(default_factory=list)
    stages_skipped: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    noop_reason: str | None = None
    hook_errors: list[str] = field(default_factory=list)

    # Timing
    started_at: datetime = field(default_factory=utcnow)
    processing_time_ms: int | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.final_status == ProcessingStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            'content_item_id': self.content_item_id,
            'final_status': self.final_status.value if self.final_status else None,
            'stages_run': self.stages_run,
            'stages_skipped': self.stages_skipped,
            'failed_stage': self.failed_stage,
            'error': self.error,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'noop_reason': self.noop_reason,
            'hook_errors': self.hook_errors,
            'processing_time_ms': self.processing_time_ms,
            'stage_timings': self.stage_timings,
            'success': self.success,
        }


def first_stage(item: ContentItem, reprocess: bool = False) -> PipelineStage:
    """
    Stage a fresh run starts from.

    Items with a transcript (text sources, externally supplied transcripts)
    skip straight to analysis. A reprocess of media content re-transcribes.
    """
    if reprocess and item.media_ref:
        return PipelineStage.TRANSCRIPTION
    if item.has_transcript or not item.media_ref:
        return PipelineStage.ANALYSIS
    return PipelineStage.TRANSCRIPTION


class ProcessingOrchestrator:
    """
    Runs content items through the stage executors.

    Usage:
        orchestrator = ProcessingOrchestrator(repository, index, stages, knowledge_repository)
        await orchestrator.start()
        status = await orchestrator.trigger(item_id)
    """

    def __init__(
        self,
        repository: ContentItemRepository,
        index: EmbeddingIndex,
        stages: list[StageExecutor],
        knowledge_repository: KnowledgeGraphRepository | None = None,
        hooks: list[PostCompletionHook] | None = None,
        max_attempts: int = 3,
        backoff_min_seconds: float = 1.0,
        backoff_max_seconds: float = 10.0,
        concurrency: int = 4,
        max_deliveries: int = 3,
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Content item store (single writer of status via transition())
            index: Embedding index receiving chunk and decision embeddings
            stages: Stage executors, at most one per PipelineStage
            knowledge_repository: Decision store; decisions are dropped if None
            hooks: Awaited after an item completes; failures are logged only
            max_attempts: Attempts per stage for TransientError
            backoff_min_seconds: Minimum wait between attempts
            backoff_max_seconds: Maximum wait between attempts
            concurrency: Worker count of the processing queue
            max_deliveries: Redeliveries of a crashed job before it is dead-lettered
        """
        self.repository = repository
        self.index = index
        self.stages: dict[PipelineStage, StageExecutor] = {s.stage: s for s in stages}
        self.knowledge_repository = knowledge_repository
        self.hooks = list(hooks or [])
        self.max_attempts = max_attempts
        self.backoff_min_seconds = backoff_min_seconds
        self.backoff_max_seconds = backoff_max_seconds

        self.queue = ProcessingQueue(
            handler=self.run,
            concurrency=concurrency,
            max_deliveries=max_deliveries,
            on_dead_letter=self._dead_letter,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self, drain: bool = True) -> None:
        await self.queue.stop(drain=drain)

    async def drain(self) -> None:
        """Wait for every queued run to finish."""
        await self.queue.join()

    def add_hook(self, hook: PostCompletionHook) -> None:
        self.hooks.append(hook)

    # =========================================================================
    # Outbound operations
    # =========================================================================

    async def get_status(self, item_id: str) -> ProcessingStatusView:
        item = await self.repository.require(item_id)
        return item.status_view()

    async def trigger(self, item_id: str, reprocess: bool = False) -> ProcessingStatusView:
        """
        Request processing of an item. Returns immediately.

        No-op (returns the current status) when the item is already in flight,
        already completed, or failed on unsupported input, unless
        ``reprocess`` is set for the latter two. A retry after a transient
        failure resumes from the failed stage.
        """
        item = await self.repository.require(item_id)
        status = item.processing_status

        with logging_context(organization_id=item.organization_id, content_item_id=item.id):
            if status in IN_FLIGHT_STATUSES:
                logger.info('orchestrator.trigger_ignored', reason='in_flight', status=status.value)
                return item.status_view()
            if status == ProcessingStatus.COMPLETED and not reprocess:
                logger.info('orchestrator.trigger_ignored', reason='completed')
                return item.status_view()
            if (
                status == ProcessingStatus.FAILED
                and item.error_kind == ErrorKind.FATAL_INPUT
                and not reprocess
            ):
                logger.info('orchestrator.trigger_ignored', reason='unsupported_input')
                return item.status_view()

            if reprocess or status == ProcessingStatus.COMPLETED:
                start = first_stage(item, reprocess=True)
            elif status == ProcessingStatus.FAILED and item.failed_stage is not None:
                start = item.failed_stage
            else:
                start = first_stage(item)

            claimed = await self.repository.transition(
                item.id,
                expected={status},
                new_status=start.status,
                restart=status.terminal,
                processing_error=None,
                error_kind=None,
                failed_stage=None,
            )
            if claimed is None:
                # Lost the race to another trigger
                current = await self.repository.require(item_id)
                logger.info('orchestrator.trigger_ignored', reason='claimed_elsewhere')
                return current.status_view()

            self.queue.submit(
                ProcessingJob(content_item_id=item.id, start_stage=start, trace_id=get_trace_id())
            )
            logger.info(
                'orchestrator.triggered',
                start_stage=start.value,
                reprocess=reprocess,
                attempt=claimed.attempt,
            )
            return claimed.status_view()

    async def trigger_many(self, item_ids: list[str], reprocess: bool = False) -> PartialSuccessResult:
        """
        Trigger a batch of items (scheduled source syncs, bulk reprocess).

        Each id goes through trigger(); an unknown id is recorded as a
        failure and the rest of the batch continues. Duplicate ids count once.
        """
        result = PartialSuccessResult()
        for item_id in dict.fromkeys(item_ids):
            try:
                status = await self.trigger(item_id, reprocess=reprocess)
            except ContentPipelineError as e:
                result.add_failure(e, item_id=item_id)
                continue
            result.add_success(item_id=item_id, data=status.model_dump(mode='json'))

        logger.info(
            'orchestrator.batch_triggered',
            requested=result.total_count,
            failed=result.failure_count,
            reprocess=reprocess,
        )
        return result

    async def recover_stale(self, older_than: timedelta) -> list[str]:
        """
        Fail items stuck in an in-flight status for longer than ``older_than``.

        They become transient failures, so a later trigger resumes them.
        """
        cutoff = utcnow() - older_than
        recovered = []
        for item in await self.repository.find_stale(cutoff):
            updated = await self.repository.transition(
                item.id,
                expected={item.processing_status},
                new_status=ProcessingStatus.FAILED,
                processing_error='Processing timed out',
                error_kind=ErrorKind.TRANSIENT,
                failed_stage=_STATUS_STAGE[item.processing_status],
                attempt=item.attempt + 1,
            )
            if updated is not None:
                recovered.append(item.id)
                logger.warning(
                    'orchestrator.stale_recovered',
                    content_item_id=item.id,
                    status=item.processing_status.value,
                )
        return recovered

    # =========================================================================
    # Worker side
    # =========================================================================

    async def run(self, job: ProcessingJob) -> PipelineRunResult:
        """
        Execute the pipeline for a claimed item.

        Safe to call again for the same job (redelivery): a finished item is
        left alone, an in-flight one resumes from the later of the job's start
        stage and the stage its status implies.
        """
        result = PipelineRunResult(content_item_id=job.content_item_id)
        timer = PipelineTimer()

        item = await self.repository.get(job.content_item_id)
        if item is None:
            result.noop_reason = 'not_found'
            logger.warning('orchestrator.item_missing', content_item_id=job.content_item_id)
            return result

        with logging_context(
            trace_id=job.trace_id or job.job_id,
            organization_id=item.organization_id,
            content_item_id=item.id,
        ):
            if item.processing_status not in IN_FLIGHT_STATUSES:
                result.final_status = item.processing_status
                result.noop_reason = 'not_in_flight'
                logger.info('orchestrator.run_skipped', status=item.processing_status.value)
                return result

            start = max(
                STAGE_ORDER.index(job.start_stage),
                STAGE_ORDER.index(_STATUS_STAGE[item.processing_status]),
            )
            logger.info(
                'orchestrator.run_started',
                start_stage=STAGE_ORDER[start].value,
                delivery=job.deliveries,
            )

            current_status = item.processing_status
            for stage in STAGE_ORDER[start:]:
                executor = self.stages.get(stage)
                if executor is None or not executor.should_run(item):
                    result.stages_skipped.append(stage.value)
                    continue

                if stage.status != current_status:
                    moved = await self.repository.transition(
                        item.id, expected={current_status}, new_status=stage.status
                    )
                    if moved is None:
                        result.noop_reason = 'status_changed'
                        logger.warning('orchestrator.lost_ownership', stage=stage.value)
                        return result
                    item, current_status = moved, moved.processing_status

                logger.info('orchestrator.stage_started', stage=stage.value)
                try:
                    with timer.stage(stage.value):
                        update = await self._execute(executor, item)
                        item = await self._persist(item, update)
                except StageError as e:
                    await self._fail(item, current_status, stage, e, result)
                    result.processing_time_ms = int(timer.total_ms)
                    result.stage_timings = timer.stages.copy()
                    return result

                if update.skipped:
                    result.stages_skipped.append(stage.value)
                else:
                    result.stages_run.append(stage.value)
                logger.info('orchestrator.stage_completed', **update.to_dict())

            completed = await self.repository.transition(
                item.id, expected={current_status}, new_status=ProcessingStatus.COMPLETED
            )
            if completed is None:
                result.noop_reason = 'status_changed'
                logger.warning('orchestrator.lost_ownership', stage='complete')
                return result

            result.final_status = ProcessingStatus.COMPLETED
            result.processing_time_ms = int(timer.total_ms)
            result.stage_timings = timer.stages.copy()
            logger.info(
                'orchestrator.completed',
                stages_run=result.stages_run,
                stages_skipped=result.stages_skipped,
                **timer.summary(),
            )

            result.hook_errors = await self._run_hooks(completed)
            return result

    async def _execute(self, executor: StageExecutor, item: ContentItem) -> StageUpdate:
        """Run one stage, retrying TransientError with exponential backoff."""
        stage = executor.stage.value
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=1, min=self.backoff_min_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        'orchestrator.stage_retry',
                        stage=stage,
                        attempt=attempt.retry_state.attempt_number,
                    )
                try:
                    return await executor.run(item)
                except Exception as e:
                    raise classify_exception(e, stage=stage) from e
        raise TransientError('Stage retries exhausted', stage=stage)

    async def _persist(self, item: ContentItem, update: StageUpdate) -> ContentItem:
        """Write a stage's output. Storage failures fail the stage."""
        try:
            if update.decisions is not None and self.knowledge_repository is not None:
                removed = await self.knowledge_repository.replace_decisions(
                    item.organization_id, item.id, update.decisions
                )
                for decision_id in removed:
                    await self.index.delete_owner(OwnerType.DECISION, decision_id)

            for embedding_set in update.embedding_sets:
                if embedding_set.owner_type == OwnerType.DECISION and self.knowledge_repository is None:
                    continue
                await self.index.upsert(
                    embedding_set.owner_type, embedding_set.owner_id, embedding_set.embeddings
                )

            if update.fields:
                item = await self.repository.apply_update(item.id, update.fields)
        except StageError:
            raise
        except Exception as e:
            raise classify_exception(e, stage=update.stage.value) from e
        return item

    async def _fail(
        self,
        item: ContentItem,
        current_status: ProcessingStatus,
        stage: PipelineStage,
        error: StageError,
        result: PipelineRunResult,
    ) -> None:
        failed = await self.repository.transition(
            item.id,
            expected={current_status},
            new_status=ProcessingStatus.FAILED,
            processing_error=error.message,
            error_kind=error.kind,
            failed_stage=stage,
            attempt=item.attempt + 1,
        )
        result.final_status = ProcessingStatus.FAILED if failed else None
        result.failed_stage = stage.value
        result.error = error.message
        result.error_kind = error.kind
        log = logger.warning if isinstance(error, (TransientError, FatalInputError)) else logger.error
        log(
            'orchestrator.stage_failed',
            stage=stage.value,
            error=error.message,
            error_kind=error.kind.value,
            attempt=item.attempt + 1,
        )

    async def _run_hooks(self, item: ContentItem) -> list[str]:
        if not self.hooks:
            return []
        outcomes = await asyncio.gather(
            *(hook(item) for hook in self.hooks), return_exceptions=True
        )
        errors = []
        for hook, outcome in zip(self.hooks, outcomes):
            if isinstance(outcome, BaseException):
                name = getattr(hook, '__name__', type(hook).__name__)
                errors.append(f"{name}: {outcome}")
                logger.error('orchestrator.hook_failed', hook=name, error=str(outcome))
        return errors

    async def _dead_letter(self, job: ProcessingJob, exc: BaseException) -> None:
        """A run crashed on every delivery: surface it as an internal failure."""
        item = await self.repository.get(job.content_item_id)
        if item is None or item.processing_status not in IN_FLIGHT_STATUSES:
            return
        await self.repository.transition(
            item.id,
            expected={item.processing_status},
            new_status=ProcessingStatus.FAILED,
            processing_error=f"Processing crashed: {exc}",
            error_kind=ErrorKind.INTERNAL,
            failed_stage=_STATUS_STAGE[item.processing_status],
            attempt=item.attempt + 1,
        )
