"""
Speaker diarization stage.

Optional: skipped when diarization is not configured, disabled for the
organization (``metadata.diarization_enabled = false``), or the item is
known to have a single speaker. When the provider reports one speaker the
segments are left unlabelled.
"""

import structlog

from ..clients.diarization_client import DiarizationClient, Utterance
from ..errors import classify_exception
from ..models.content_item import (
    ContentItem,
    PipelineStage,
    SpeakerSummary,
    TranscriptSegment,
)
from .base import StageUpdate

logger = structlog.get_logger(__name__)


def _overlap(a_start: float, a_end: float, b_start: float, b_end: float) -> float:
    return max(0.0, min(a_end, b_end) - max(a_start, b_start))


def assign_speakers(
    segments: list[TranscriptSegment],
    utterances: list[Utterance],
) -> list[TranscriptSegment]:
    """Label each segment with the speaker whose utterances overlap it most."""
    labelled = []
    for segment in segments:
        best_speaker = None
        best_overlap = 0.0
        for utterance in utterances:
            overlap = _overlap(segment.start, segment.end, utterance.start, utterance.end)
            if overlap > best_overlap:
                best_overlap = overlap
                best_speaker = utterance.speaker
        speaker = f"Speaker {best_speaker}" if best_speaker is not None else None
        labelled.append(segment.model_copy(update={'speaker': speaker}))
    return labelled


def summarize_speakers(segments: list[TranscriptSegment]) -> list[SpeakerSummary]:
    """Per-speaker speaking time and segment count, most talkative first."""
    stats: dict[str, SpeakerSummary] = {}
    for segment in segments:
        if not segment.speaker:
            continue
        summary = stats.setdefault(segment.speaker, SpeakerSummary(speaker=segment.speaker))
        summary.speaking_seconds += segment.end - segment.start
        summary.segment_count += 1
    return sorted(stats.values(), key=lambda s: (-s.speaking_seconds, s.speaker))


class DiarizationStage:
    """Transcript segments -> speaker-labelled segments."""

    stage = PipelineStage.DIARIZATION

    def __init__(self, client: DiarizationClient | None):
        self.client = client

    def should_run(self, item: ContentItem) -> bool:
        if self.client is None or not self.client.is_configured:
            return False
        if item.metadata.get('diarization_enabled') is False:
            return False
        if item.metadata.get('speaker_count') == 1:
            return False
        return bool(item.media_ref and item.transcript_segments)

    async def run(self, item: ContentItem) -> StageUpdate:
        segments = item.transcript_segments or []
        try:
            utterances = await self.client.diarize(
                item.media_ref, speakers_expected=item.metadata.get('speaker_count')
            )
        except Exception as e:
            raise classify_exception(e, stage=self.stage.value) from e

        speakers = {u.speaker for u in utterances}
        if len(speakers) <= 1:
            logger.info('diarization.single_speaker', speakers=len(speakers))
            return StageUpdate(stage=self.stage, skipped=True, details={'speakers': len(speakers)})

        labelled = assign_speakers(segments, utterances)
        summaries = summarize_speakers(labelled)
        return StageUpdate(
            stage=self.stage,
            fields={'transcript_segments': labelled, 'speakers': summaries},
            details={'speakers': len(summaries)},
        )
