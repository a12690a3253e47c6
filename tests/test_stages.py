"""
Tests for the stage executors.

Every stage is a function of a ContentItem snapshot to a StageUpdate, so
they are tested in isolation against mocked clients.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from content_pipeline.clients.diarization_client import Utterance
from content_pipeline.clients.media_client import MediaClient, MediaPayload
from content_pipeline.errors import FatalInputError, StageError, TransientError
from content_pipeline.models.action_item import ActionItemPriority
from content_pipeline.models.content_item import PipelineStage, TranscriptSegment
from content_pipeline.models.embedding import OwnerType
from content_pipeline.prompts.analyze_content import (
    AnalysisResult,
    ExtractedActionItem,
    ExtractedChapter,
    ExtractedDecision,
)
from content_pipeline.stages import (
    AnalysisStage,
    DiarizationStage,
    EmbeddingStage,
    TranscriptionStage,
)
from content_pipeline.stages.analysis import normalize_tags, parse_due_date
from content_pipeline.stages.diarization import assign_speakers, summarize_speakers
from content_pipeline.stages.transcription import build_transcription_hint


def _media_client(handler) -> MediaClient:
    return MediaClient(
        max_bytes=1024,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestMediaClient:
    @pytest.mark.asyncio
    async def test_downloads_supported_media(self):
        client = _media_client(lambda request: httpx.Response(200, content=b"audio-bytes"))

        payload = await client.fetch("https://media.example.com/call.mp3")

        assert payload.filename == "media.mp3"
        assert payload.content == b"audio-bytes"

    @pytest.mark.asyncio
    async def test_extension_from_content_type(self):
        client = _media_client(
            lambda request: httpx.Response(200, content=b"x", headers={"content-type": "video/mp4"})
        )
        payload = await client.fetch("https://media.example.com/recording")
        assert payload.filename == "media.mp4"

    @pytest.mark.asyncio
    async def test_unsupported_format_is_fatal(self):
        client = _media_client(
            lambda request: httpx.Response(200, content=b"x", headers={"content-type": "text/html"})
        )
        with pytest.raises(FatalInputError):
            await client.fetch("https://media.example.com/page")

    @pytest.mark.asyncio
    async def test_oversized_is_fatal(self):
        client = _media_client(lambda request: httpx.Response(200, content=b"x" * 2048))
        with pytest.raises(FatalInputError):
            await client.fetch("https://media.example.com/big.wav")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        client = _media_client(lambda request: httpx.Response(503))
        with pytest.raises(TransientError):
            await client.fetch("https://media.example.com/call.mp3")

    @pytest.mark.asyncio
    async def test_not_found_is_fatal(self):
        client = _media_client(lambda request: httpx.Response(404))
        with pytest.raises(FatalInputError):
            await client.fetch("https://media.example.com/call.mp3")

    @pytest.mark.asyncio
    async def test_non_url_is_fatal(self):
        with pytest.raises(FatalInputError):
            await MediaClient().fetch("s3-object-key")


class TestTranscriptionStage:
    def test_hint_from_metadata(self, media_item):
        item = media_item.model_copy(
            update={"metadata": {"participant_names": ["Maya", "Leo"], "vocabulary": ["pgvector", "Maya"]}}
        )
        assert build_transcription_hint(item) == "Maya, Leo, pgvector"
        assert build_transcription_hint(media_item) is None

    @pytest.mark.asyncio
    async def test_transcribes_media(self, fake_openai, media_item):
        media = MagicMock()
        media.fetch = AsyncMock(return_value=MediaPayload("media.mp4", b"bytes", "video/mp4"))
        fake_openai.transcribe_audio.return_value = {
            "text": " Hello team. ",
            "duration": 12.5,
            "segments": [
                {"start": 0.0, "end": 4.0, "text": "Hello team."},
                {"start": 4.0, "end": 5.0, "text": ""},
            ],
        }

        update = await TranscriptionStage(fake_openai, media).run(media_item)

        assert update.stage == PipelineStage.TRANSCRIPTION
        assert update.fields["transcript"] == "Hello team."
        assert len(update.fields["transcript_segments"]) == 1
        assert update.fields["duration_seconds"] == 12.5

    @pytest.mark.asyncio
    async def test_no_media_is_fatal(self, fake_openai, text_item):
        with pytest.raises(FatalInputError):
            await TranscriptionStage(fake_openai, MagicMock()).run(text_item)

    @pytest.mark.asyncio
    async def test_silence_is_fatal(self, fake_openai, media_item):
        media = MagicMock()
        media.fetch = AsyncMock(return_value=MediaPayload("media.mp3", b"b", None))
        fake_openai.transcribe_audio.return_value = {"text": "   ", "segments": []}

        with pytest.raises(FatalInputError):
            await TranscriptionStage(fake_openai, media).run(media_item)

    @pytest.mark.asyncio
    async def test_provider_timeout_is_transient(self, fake_openai, media_item):
        media = MagicMock()
        media.fetch = AsyncMock(return_value=MediaPayload("media.mp3", b"b", None))
        fake_openai.transcribe_audio.side_effect = TimeoutError("read timeout")

        with pytest.raises(TransientError):
            await TranscriptionStage(fake_openai, media).run(media_item)


class TestDiarizationStage:
    def _segments(self) -> list[TranscriptSegment]:
        return [
            TranscriptSegment(start=0.0, end=5.0, text="Hi"),
            TranscriptSegment(start=5.0, end=12.0, text="Hello"),
        ]

    def test_assign_and_summarize(self):
        utterances = [Utterance("A", 0.0, 5.5, "Hi"), Utterance("B", 5.5, 12.0, "Hello")]
        labelled = assign_speakers(self._segments(), utterances)

        assert [s.speaker for s in labelled] == ["Speaker A", "Speaker B"]
        summaries = summarize_speakers(labelled)
        assert summaries[0].speaker == "Speaker B"
        assert summaries[0].speaking_seconds == pytest.approx(7.0)

    def test_should_run(self, media_item):
        client = MagicMock(is_configured=True)
        stage = DiarizationStage(client)
        item = media_item.model_copy(update={"transcript_segments": self._segments()})

        assert stage.should_run(item) is True
        assert stage.should_run(item.model_copy(update={"metadata": {"speaker_count": 1}})) is False
        assert (
            stage.should_run(item.model_copy(update={"metadata": {"diarization_enabled": False}}))
            is False
        )
        assert DiarizationStage(MagicMock(is_configured=False)).should_run(item) is False
        assert DiarizationStage(None).should_run(item) is False

    @pytest.mark.asyncio
    async def test_single_speaker_leaves_segments_unlabelled(self, media_item):
        client = MagicMock(is_configured=True)
        client.diarize = AsyncMock(return_value=[Utterance("A", 0.0, 12.0, "Hi Hello")])
        item = media_item.model_copy(update={"transcript_segments": self._segments()})

        update = await DiarizationStage(client).run(item)

        assert update.skipped is True
        assert update.fields == {}

    @pytest.mark.asyncio
    async def test_labels_segments(self, media_item):
        client = MagicMock(is_configured=True)
        client.diarize = AsyncMock(
            return_value=[Utterance("A", 0.0, 5.0, "Hi"), Utterance("B", 5.0, 12.0, "Hello")]
        )
        item = media_item.model_copy(update={"transcript_segments": self._segments()})

        update = await DiarizationStage(client).run(item)

        assert [s.speaker for s in update.fields["transcript_segments"]] == ["Speaker A", "Speaker B"]
        assert len(update.fields["speakers"]) == 2


class TestAnalysisStage:
    def test_normalize_tags(self):
        assert normalize_tags(["#Database", "database ", "Q3  Roadmap", ""]) == ["database", "q3 roadmap"]
        assert len(normalize_tags([f"t{i}" for i in range(20)])) == 10

    def test_parse_due_date(self):
        assert parse_due_date("2026-11-06").day == 6
        assert parse_due_date("next friday") is None
        assert parse_due_date(None) is None

    @pytest.mark.asyncio
    async def test_produces_fields_decisions_and_embeddings(self, fake_openai, text_item):
        fake_openai.chat_completion_structured.return_value = AnalysisResult(
            summary="The team chose Postgres for billing storage.",
            tags=["Database", "billing"],
            action_items=[
                ExtractedActionItem(title="Write the schema", assignee="Leo", priority="high", due_date="2026-11-06"),
                ExtractedActionItem(title="   "),
            ],
            chapters=[
                ExtractedChapter(title="Release", start_time=60.0),
                ExtractedChapter(title="Database", start_time=0.0),
            ],
            decisions=[ExtractedDecision(summary="Use Postgres for storage", tags=["Database"])],
        )

        update = await AnalysisStage(fake_openai).run(text_item)

        assert update.fields["tags"] == ["database", "billing"]
        assert [a.title for a in update.fields["action_items"]] == ["Write the schema"]
        assert update.fields["action_items"][0].priority == ActionItemPriority.HIGH
        assert [c.title for c in update.fields["chapters"]] == ["Database", "Release"]

        assert len(update.decisions) == 1
        decision = update.decisions[0]
        assert decision.content_item_id == text_item.id
        assert decision.organization_id == text_item.organization_id

        assert len(update.embedding_sets) == 1
        embedding_set = update.embedding_sets[0]
        assert embedding_set.owner_type == OwnerType.DECISION
        assert embedding_set.owner_id == decision.id

    @pytest.mark.asyncio
    async def test_no_transcript_is_fatal(self, fake_openai, media_item):
        with pytest.raises(FatalInputError):
            await AnalysisStage(fake_openai).run(media_item)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_classified(self, fake_openai, text_item):
        fake_openai.chat_completion_structured.side_effect = KeyError("choices")

        with pytest.raises(StageError):
            await AnalysisStage(fake_openai).run(text_item)


class TestEmbeddingStage:
    @pytest.mark.asyncio
    async def test_one_embedding_per_chunk(self, fake_openai, text_item):
        update = await EmbeddingStage(fake_openai, max_tokens=30, overlap_tokens=0).run(text_item)

        [embedding_set] = update.embedding_sets
        assert embedding_set.owner_type == OwnerType.TRANSCRIPT_CHUNK
        assert embedding_set.owner_id == text_item.id
        indexes = [e.chunk_index for e in embedding_set.embeddings]
        assert indexes == list(range(len(indexes)))
        assert len(indexes) > 1
        assert all(e.organization_id == text_item.organization_id for e in embedding_set.embeddings)

    @pytest.mark.asyncio
    async def test_batches_requests(self, fake_openai, text_item):
        await EmbeddingStage(fake_openai, max_tokens=30, overlap_tokens=0, batch_size=1).run(text_item)
        assert fake_openai.create_embeddings_batch.await_count > 1

    @pytest.mark.asyncio
    async def test_count_mismatch_fails(self, fake_openai, text_item):
        fake_openai.create_embeddings_batch.side_effect = lambda texts, **_: []

        with pytest.raises(StageError):
            await EmbeddingStage(fake_openai).run(text_item)

    @pytest.mark.asyncio
    async def test_no_transcript_is_fatal(self, fake_openai, media_item):
        with pytest.raises(FatalInputError):
            await EmbeddingStage(fake_openai).run(media_item)
