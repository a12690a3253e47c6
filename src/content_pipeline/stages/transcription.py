"""
Transcription stage.

Downloads the item's media and transcribes it with Whisper. Unsupported or
oversized media fails fast as FatalInputError; network trouble surfaces as
TransientError so the orchestrator can retry the stage.
"""

import structlog

from ..clients.media_client import MediaClient
from ..clients.openai_client import OpenAIClient
from ..errors import FatalInputError, classify_exception
from ..models.content_item import ContentItem, PipelineStage, TranscriptSegment
from .base import StageUpdate

logger = structlog.get_logger(__name__)


def build_transcription_hint(item: ContentItem) -> str | None:
    """Participant names and vocabulary from metadata, passed to Whisper as a prompt."""
    names = item.metadata.get('participant_names') or []
    vocabulary = item.metadata.get('vocabulary') or []
    terms = [str(t) for t in [*names, *vocabulary] if t]
    if not terms:
        return None
    return ', '.join(dict.fromkeys(terms))


class TranscriptionStage:
    """Media reference -> transcript + timed segments."""

    stage = PipelineStage.TRANSCRIPTION

    def __init__(self, openai: OpenAIClient, media: MediaClient):
        self.openai = openai
        self.media = media

    def should_run(self, item: ContentItem) -> bool:
        return True

    async def run(self, item: ContentItem) -> StageUpdate:
        if not item.media_ref:
            raise FatalInputError(
                'Content item has no media to transcribe',
                stage=self.stage.value,
                context={'content_item_id': item.id, 'source_type': item.source_type.value},
            )

        payload = await self.media.fetch(item.media_ref)
        logger.info(
            'transcription.media_fetched',
            bytes=payload.size,
            filename=payload.filename,
        )

        try:
            result = await self.openai.transcribe_audio(
                payload.filename,
                payload.content,
                prompt=build_transcription_hint(item),
            )
        except Exception as e:
            raise classify_exception(e, stage=self.stage.value) from e

        transcript = (result.get('text') or '').strip()
        if not transcript:
            raise FatalInputError(
                'No speech detected in media',
                stage=self.stage.value,
                context={'content_item_id': item.id},
            )

        segments = [
            TranscriptSegment(start=s['start'], end=max(s['end'], s['start']), text=s['text'])
            for s in result.get('segments', [])
            if s.get('text')
        ]
        duration = result.get('duration')
        if duration is None and segments:
            duration = segments[-1].end

        return StageUpdate(
            stage=self.stage,
            fields={
                'transcript': transcript,
                'transcript_segments': segments,
                'duration_seconds': duration,
            },
            details={'segments': len(segments), 'characters': len(transcript)},
        )
