"""
Tests for the processing orchestrator.

Stage executors are replaced by scripted fakes so each test controls exactly
which stage succeeds, fails transiently, or rejects its input. Runs go
through the real in-process queue.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from content_pipeline.errors import ErrorKind, FatalInputError, ItemNotFoundError, TransientError
from content_pipeline.logging import logging_context
from content_pipeline.models.action_item import ActionItem, ActionItemStatus
from content_pipeline.models.content_item import (
    ContentItem,
    PipelineStage,
    ProcessingPhase,
    ProcessingStatus,
    SourceType,
    utcnow,
)
from content_pipeline.models.embedding import Embedding, OwnerType
from content_pipeline.pipeline import ProcessingJob, ProcessingOrchestrator, first_stage
from content_pipeline.stages.base import EmbeddingSet, StageUpdate
from knowledge_graph.models import Decision


class FakeStage:
    """Scripted stage: pops one outcome per call (an exception or a StageUpdate factory)."""

    def __init__(self, stage: PipelineStage, outcomes=None, run_when=True, fields=None):
        self.stage = stage
        self.outcomes = list(outcomes or [])
        self.run_when = run_when
        self.fields = fields or {}
        self.calls = 0
        self.seen_statuses: list[ProcessingStatus] = []

    def should_run(self, item: ContentItem) -> bool:
        return self.run_when

    async def run(self, item: ContentItem) -> StageUpdate:
        self.calls += 1
        self.seen_statuses.append(item.processing_status)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(item)
        return StageUpdate(stage=self.stage, fields=dict(self.fields))


def _stages(*overrides: FakeStage) -> dict[PipelineStage, FakeStage]:
    stages = {
        PipelineStage.TRANSCRIPTION: FakeStage(
            PipelineStage.TRANSCRIPTION, fields={"transcript": "We use Postgres for storage."}
        ),
        PipelineStage.DIARIZATION: FakeStage(PipelineStage.DIARIZATION, run_when=False),
        PipelineStage.ANALYSIS: FakeStage(PipelineStage.ANALYSIS, fields={"summary": "Storage chat"}),
        PipelineStage.EMBEDDING: FakeStage(PipelineStage.EMBEDDING),
    }
    stages.update({o.stage: o for o in overrides})
    return stages


def _orchestrator(repository, index, stages, **kwargs) -> ProcessingOrchestrator:
    kwargs.setdefault("backoff_min_seconds", 0)
    kwargs.setdefault("backoff_max_seconds", 0)
    return ProcessingOrchestrator(
        repository=repository, index=index, stages=list(stages.values()), **kwargs
    )


async def _process(orchestrator: ProcessingOrchestrator, item_id: str, reprocess: bool = False):
    """Trigger and wait for the queued run to finish."""
    await orchestrator.start()
    try:
        status = await orchestrator.trigger(item_id, reprocess=reprocess)
        await orchestrator.drain()
    finally:
        await orchestrator.stop()
    return status


class TestFirstStage:
    def test_text_item_starts_at_analysis(self, text_item):
        assert first_stage(text_item) == PipelineStage.ANALYSIS

    def test_media_item_starts_at_transcription(self, media_item):
        assert first_stage(media_item) == PipelineStage.TRANSCRIPTION

    def test_supplied_transcript_skips_transcription(self, media_item):
        item = media_item.model_copy(update={"transcript": "Already transcribed."})
        assert first_stage(item) == PipelineStage.ANALYSIS
        assert first_stage(item, reprocess=True) == PipelineStage.TRANSCRIPTION


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_text_item_completes_without_transcription(self, repository, index, text_item):
        await repository.create(text_item)
        stages = _stages()
        orchestrator = _orchestrator(repository, index, stages)

        claimed = await _process(orchestrator, text_item.id)

        assert claimed.status == ProcessingStatus.ANALYZING
        item = await repository.require(text_item.id)
        assert item.processing_status == ProcessingStatus.COMPLETED
        assert item.summary == "Storage chat"
        assert stages[PipelineStage.TRANSCRIPTION].calls == 0
        assert stages[PipelineStage.ANALYSIS].calls == 1
        assert stages[PipelineStage.EMBEDDING].calls == 1

    @pytest.mark.asyncio
    async def test_media_item_status_only_moves_forward(self, repository, index, media_item):
        await repository.create(media_item)
        stages = _stages(FakeStage(PipelineStage.DIARIZATION, run_when=True))
        orchestrator = _orchestrator(repository, index, stages)

        await _process(orchestrator, media_item.id)

        observed = [
            status
            for stage in (
                PipelineStage.TRANSCRIPTION,
                PipelineStage.DIARIZATION,
                PipelineStage.ANALYSIS,
                PipelineStage.EMBEDDING,
            )
            for status in stages[stage].seen_statuses
        ]
        assert observed == [
            ProcessingStatus.TRANSCRIBING,
            ProcessingStatus.DIARIZING,
            ProcessingStatus.ANALYZING,
            ProcessingStatus.ANALYZING,
        ]
        item = await repository.require(media_item.id)
        assert item.processing_status == ProcessingStatus.COMPLETED
        assert item.transcript == "We use Postgres for storage."

    @pytest.mark.asyncio
    async def test_skipped_diarization_goes_straight_to_analysis(self, repository, index, media_item):
        await repository.create(media_item)
        stages = _stages()
        orchestrator = _orchestrator(repository, index, stages)

        await _process(orchestrator, media_item.id)

        assert stages[PipelineStage.DIARIZATION].calls == 0
        assert stages[PipelineStage.ANALYSIS].seen_statuses == [ProcessingStatus.ANALYZING]

    @pytest.mark.asyncio
    async def test_run_result(self, repository, index, text_item):
        await repository.create(text_item)
        orchestrator = _orchestrator(repository, index, _stages())
        await orchestrator.trigger(text_item.id)

        result = await orchestrator.run(
            ProcessingJob(content_item_id=text_item.id, start_stage=PipelineStage.ANALYSIS)
        )

        assert result.success is True
        assert result.stages_run == ["analysis", "embedding"]
        assert result.to_dict()["final_status"] == "completed"


class TestIdempotentTrigger:
    @pytest.mark.asyncio
    async def test_second_trigger_while_in_flight_is_noop(self, repository, index, text_item):
        await repository.create(text_item)
        stages = _stages()
        orchestrator = _orchestrator(repository, index, stages)

        first = await orchestrator.trigger(text_item.id)
        second = await orchestrator.trigger(text_item.id)

        assert first.status == ProcessingStatus.ANALYZING
        assert second.status == ProcessingStatus.ANALYZING
        assert orchestrator.queue.pending == 1

        await orchestrator.start()
        await orchestrator.drain()
        await orchestrator.stop()
        assert stages[PipelineStage.ANALYSIS].calls == 1

    @pytest.mark.asyncio
    async def test_completed_item_not_reprocessed_without_flag(self, repository, index, text_item):
        await repository.create(text_item)
        stages = _stages()
        orchestrator = _orchestrator(repository, index, stages)
        await _process(orchestrator, text_item.id)

        status = await _process(orchestrator, text_item.id)

        assert status.status == ProcessingStatus.COMPLETED
        assert stages[PipelineStage.ANALYSIS].calls == 1

    @pytest.mark.asyncio
    async def test_redelivered_job_for_finished_item_is_noop(self, repository, index, text_item):
        await repository.create(text_item)
        stages = _stages()
        orchestrator = _orchestrator(repository, index, stages)
        await _process(orchestrator, text_item.id)

        result = await orchestrator.run(
            ProcessingJob(content_item_id=text_item.id, start_stage=PipelineStage.ANALYSIS)
        )

        assert result.noop_reason == "not_in_flight"
        assert stages[PipelineStage.ANALYSIS].calls == 1

    @pytest.mark.asyncio
    async def test_unknown_item(self, repository, index):
        orchestrator = _orchestrator(repository, index, _stages())
        with pytest.raises(ItemNotFoundError):
            await orchestrator.trigger("missing")

    @pytest.mark.asyncio
    async def test_trigger_many_collects_failures(self, repository, index, text_item, media_item):
        await repository.create(text_item)
        await repository.create(media_item)
        orchestrator = _orchestrator(repository, index, _stages())

        result = await orchestrator.trigger_many([text_item.id, "missing", media_item.id, text_item.id])

        assert result.success_count == 2
        assert result.partial_success
        assert result.to_dict()["failed_ids"] == ["missing"]
        assert isinstance(result.failed[0].error, ItemNotFoundError)
        statuses = {r.item_id: r.data["status"] for r in result.succeeded}
        assert statuses == {text_item.id: "analyzing", media_item.id: "transcribing"}
        assert orchestrator.queue.pending == 2

    @pytest.mark.asyncio
    async def test_trigger_carries_caller_trace(self, repository, index, text_item):
        await repository.create(text_item)
        orchestrator = _orchestrator(repository, index, _stages())
        orchestrator.queue.submit = MagicMock(return_value=True)

        with logging_context(trace_id="req-42"):
            await orchestrator.trigger(text_item.id)

        [job] = orchestrator.queue.submit.call_args.args
        assert job.trace_id == "req-42"


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_error_retried_with_backoff(self, repository, index, text_item):
        await repository.create(text_item)
        analysis = FakeStage(
            PipelineStage.ANALYSIS,
            outcomes=[TransientError("timeout"), TransientError("timeout")],
            fields={"summary": "ok"},
        )
        stages = _stages(analysis)
        orchestrator = _orchestrator(repository, index, stages, max_attempts=3)

        await _process(orchestrator, text_item.id)

        assert analysis.calls == 3
        item = await repository.require(text_item.id)
        assert item.processing_status == ProcessingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_resume_from_failed_stage(
        self, repository, index, media_item
    ):
        await repository.create(media_item)
        analysis = FakeStage(
            PipelineStage.ANALYSIS,
            outcomes=[TransientError("timeout"), TransientError("timeout")],
            fields={"summary": "ok"},
        )
        stages = _stages(analysis)
        orchestrator = _orchestrator(repository, index, stages, max_attempts=2)

        await _process(orchestrator, media_item.id)

        failed = await repository.require(media_item.id)
        assert failed.processing_status == ProcessingStatus.FAILED
        assert failed.error_kind == ErrorKind.TRANSIENT
        assert failed.failed_stage == PipelineStage.ANALYSIS
        assert failed.attempt == 1
        assert failed.transcript == "We use Postgres for storage."
        assert failed.status_view().phase == ProcessingPhase.FAILED_RETRYABLE

        retried = await _process(orchestrator, media_item.id)

        assert retried.status == ProcessingStatus.ANALYZING
        assert retried.error is None
        assert stages[PipelineStage.TRANSCRIPTION].calls == 1
        item = await repository.require(media_item.id)
        assert item.processing_status == ProcessingStatus.COMPLETED
        assert item.failed_stage is None

    @pytest.mark.asyncio
    async def test_fatal_input_not_retried(self, repository, index, media_item):
        await repository.create(media_item)
        transcription = FakeStage(
            PipelineStage.TRANSCRIPTION,
            outcomes=[FatalInputError("Unsupported media format")],
        )
        stages = _stages(transcription)
        orchestrator = _orchestrator(repository, index, stages, max_attempts=3)

        await _process(orchestrator, media_item.id)

        assert transcription.calls == 1
        item = await repository.require(media_item.id)
        assert item.processing_status == ProcessingStatus.FAILED
        assert item.error_kind == ErrorKind.FATAL_INPUT
        assert item.status_view().phase == ProcessingPhase.FAILED_UNSUPPORTED
        assert stages[PipelineStage.ANALYSIS].calls == 0

        # A plain retry is ignored; reprocess starts over
        ignored = await _process(orchestrator, media_item.id)
        assert ignored.status == ProcessingStatus.FAILED
        assert transcription.calls == 1

        await _process(orchestrator, media_item.id, reprocess=True)
        assert transcription.calls == 2
        item = await repository.require(media_item.id)
        assert item.processing_status == ProcessingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_item_as_internal(self, repository, index, text_item):
        await repository.create(text_item)
        analysis = FakeStage(PipelineStage.ANALYSIS, outcomes=[KeyError("choices")])
        orchestrator = _orchestrator(repository, index, _stages(analysis))

        await _process(orchestrator, text_item.id)

        item = await repository.require(text_item.id)
        assert item.processing_status == ProcessingStatus.FAILED
        assert item.error_kind == ErrorKind.INTERNAL
        assert analysis.calls == 1


class TestPersistence:
    @pytest.mark.asyncio
    async def test_embeddings_and_decisions_written(
        self, repository, index, knowledge_repository, text_item
    ):
        await repository.create(text_item)
        decision = Decision(
            organization_id=text_item.organization_id,
            content_item_id=text_item.id,
            summary="Use Postgres for storage",
        )

        def analysis_update(item):
            return StageUpdate(
                stage=PipelineStage.ANALYSIS,
                fields={"summary": "s"},
                decisions=[decision],
                embedding_sets=[
                    EmbeddingSet(
                        owner_type=OwnerType.DECISION,
                        owner_id=decision.id,
                        embeddings=[
                            Embedding(
                                owner_type=OwnerType.DECISION,
                                owner_id=decision.id,
                                organization_id=item.organization_id,
                                vector=(1.0, 0.0),
                                source_text=decision.summary,
                                content_item_id=item.id,
                            )
                        ],
                    )
                ],
            )

        def replacement_update(item):
            return StageUpdate(stage=PipelineStage.ANALYSIS, fields={"summary": "s2"}, decisions=[])

        analysis = FakeStage(PipelineStage.ANALYSIS, outcomes=[analysis_update, replacement_update])
        orchestrator = _orchestrator(
            repository,
            index,
            _stages(analysis),
            knowledge_repository=knowledge_repository,
        )

        await _process(orchestrator, text_item.id)

        stored = await knowledge_repository.list_decisions(text_item.organization_id)
        assert [d.id for d in stored] == [decision.id]
        assert decision.id in await index.vectors_for(OwnerType.DECISION, [decision.id])

        await _process(orchestrator, text_item.id, reprocess=True)

        assert await knowledge_repository.list_decisions(text_item.organization_id) == []
        assert await index.vectors_for(OwnerType.DECISION, [decision.id]) == {}

    @pytest.mark.asyncio
    async def test_user_edits_survive_reprocess(self, repository, index, text_item):
        await repository.create(text_item)

        def extraction(item):
            return StageUpdate(
                stage=PipelineStage.ANALYSIS,
                fields={
                    "action_items": [
                        ActionItem(content_item_id=item.id, title="Write the schema", assignee="Leo")
                    ]
                },
            )

        analysis = FakeStage(PipelineStage.ANALYSIS, outcomes=[extraction, extraction])
        orchestrator = _orchestrator(repository, index, _stages(analysis))

        await _process(orchestrator, text_item.id)
        item = await repository.require(text_item.id)
        action_item = item.action_items[0]
        await repository.update_action_item(
            item.id, action_item.id, status=ActionItemStatus.COMPLETED, assignee="Maya"
        )

        await _process(orchestrator, text_item.id, reprocess=True)

        item = await repository.require(text_item.id)
        assert len(item.action_items) == 1
        assert item.action_items[0].id == action_item.id
        assert item.action_items[0].status == ActionItemStatus.COMPLETED
        assert item.action_items[0].assignee == "Maya"


class TestHooks:
    @pytest.mark.asyncio
    async def test_failing_hook_does_not_fail_item(self, repository, index, text_item):
        await repository.create(text_item)
        good_hook = AsyncMock()
        bad_hook = AsyncMock(side_effect=RuntimeError("graph down"))
        orchestrator = _orchestrator(repository, index, _stages(), hooks=[bad_hook, good_hook])
        await orchestrator.trigger(text_item.id)

        result = await orchestrator.run(
            ProcessingJob(content_item_id=text_item.id, start_stage=PipelineStage.ANALYSIS)
        )

        assert result.success is True
        assert len(result.hook_errors) == 1
        good_hook.assert_awaited_once()
        completed_item = good_hook.await_args.args[0]
        assert completed_item.processing_status == ProcessingStatus.COMPLETED


class TestRecovery:
    @pytest.mark.asyncio
    async def test_stale_items_become_retryable(self, repository, index, sample_organization_id):
        stuck = ContentItem(
            organization_id=sample_organization_id,
            source_type=SourceType.VIDEO,
            media_ref="https://media.example.com/a.mp4",
            processing_status=ProcessingStatus.TRANSCRIBING,
            updated_at=utcnow() - timedelta(hours=2),
        )
        await repository.create(stuck)
        orchestrator = _orchestrator(repository, index, _stages())

        recovered = await orchestrator.recover_stale(timedelta(minutes=30))

        assert recovered == [stuck.id]
        item = await repository.require(stuck.id)
        assert item.processing_status == ProcessingStatus.FAILED
        assert item.error_kind == ErrorKind.TRANSIENT
        assert item.failed_stage == PipelineStage.TRANSCRIPTION

    @pytest.mark.asyncio
    async def test_dead_letter_marks_internal_failure(self, repository, index, text_item):
        await repository.create(text_item)
        orchestrator = _orchestrator(repository, index, _stages())
        await orchestrator.trigger(text_item.id)

        await orchestrator._dead_letter(
            ProcessingJob(content_item_id=text_item.id, start_stage=PipelineStage.ANALYSIS),
            RuntimeError("worker crashed"),
        )

        item = await repository.require(text_item.id)
        assert item.processing_status == ProcessingStatus.FAILED
        assert item.error_kind == ErrorKind.INTERNAL
        assert "worker crashed" in item.processing_error
