"""
ContentItem model and its processing state machine.

A ContentItem is one logical piece of ingested content (a video, a chat
thread, a wiki page, an issue). It moves through

    pending -> transcribing -> (diarizing) -> analyzing -> completed

or to failed from any non-terminal status. The status values are the wire
format the rest of the system depends on and must stay stable.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import ErrorKind, InvalidTransitionError
from .action_item import ActionItem


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ProcessingStatus(str, Enum):
    """Processing lifecycle of a content item."""

    PENDING = 'pending'
    TRANSCRIBING = 'transcribing'
    DIARIZING = 'diarizing'
    ANALYZING = 'analyzing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES

    @property
    def terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


IN_FLIGHT_STATUSES = frozenset(
    {ProcessingStatus.TRANSCRIBING, ProcessingStatus.DIARIZING, ProcessingStatus.ANALYZING}
)

# Forward edges of the state machine. Leaving a terminal status is only
# possible through an explicit retry / reprocess (see RESTART_TRANSITIONS).
ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset(
        {ProcessingStatus.TRANSCRIBING, ProcessingStatus.ANALYZING, ProcessingStatus.FAILED}
    ),
    ProcessingStatus.TRANSCRIBING: frozenset(
        {ProcessingStatus.DIARIZING, ProcessingStatus.ANALYZING, ProcessingStatus.FAILED}
    ),
    ProcessingStatus.DIARIZING: frozenset({ProcessingStatus.ANALYZING, ProcessingStatus.FAILED}),
    ProcessingStatus.ANALYZING: frozenset({ProcessingStatus.COMPLETED, ProcessingStatus.FAILED}),
    ProcessingStatus.COMPLETED: frozenset(),
    ProcessingStatus.FAILED: frozenset(),
}

RESTART_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.FAILED: IN_FLIGHT_STATUSES,
    ProcessingStatus.COMPLETED: IN_FLIGHT_STATUSES,
}


def check_transition(
    current: ProcessingStatus,
    new: ProcessingStatus,
    restart: bool = False,
) -> None:
    """
    Raise InvalidTransitionError unless current -> new is a legal edge.

    Args:
        current: Status currently stored on the item
        new: Requested status
        restart: True for an explicit retry / reprocess trigger
    """
    allowed = ALLOWED_TRANSITIONS[current]
    if restart:
        allowed = allowed | RESTART_TRANSITIONS.get(current, frozenset())
    if new not in allowed:
        raise InvalidTransitionError(
            f"Illegal status transition {current.value} -> {new.value}",
            context={'current': current.value, 'requested': new.value, 'restart': restart},
        )


class PipelineStage(str, Enum):
    """Individually retryable units of work."""

    TRANSCRIPTION = 'transcription'
    DIARIZATION = 'diarization'
    ANALYSIS = 'analysis'
    EMBEDDING = 'embedding'

    @property
    def status(self) -> ProcessingStatus:
        """Processing status shown while this stage runs."""
        return STAGE_STATUS[self]


STAGE_STATUS: dict[PipelineStage, ProcessingStatus] = {
    PipelineStage.TRANSCRIPTION: ProcessingStatus.TRANSCRIBING,
    PipelineStage.DIARIZATION: ProcessingStatus.DIARIZING,
    PipelineStage.EMBEDDING: ProcessingStatus.ANALYZING,
    PipelineStage.ANALYSIS: ProcessingStatus.ANALYZING,
}

STAGE_ORDER: tuple[PipelineStage, ...] = (
    PipelineStage.TRANSCRIPTION,
    PipelineStage.DIARIZATION,
    PipelineStage.ANALYSIS,
    PipelineStage.EMBEDDING,
)


class SourceType(str, Enum):
    """Where a content item came from."""

    VIDEO = 'video'
    UPLOAD = 'upload'
    ZOOM = 'zoom'
    SLACK = 'slack'
    NOTION = 'notion'
    GITHUB = 'github'
    GOOGLE_DRIVE = 'google_drive'

    @property
    def is_media(self) -> bool:
        return self in (SourceType.VIDEO, SourceType.UPLOAD, SourceType.ZOOM)


class TranscriptSegment(BaseModel):
    """A timed span of the transcript."""

    start: float = Field(..., ge=0.0, description='Segment start in seconds')
    end: float = Field(..., ge=0.0, description='Segment end in seconds')
    text: str
    speaker: str | None = Field(default=None, description='Speaker label after diarization')


class SpeakerSummary(BaseModel):
    """Participation summary for one diarized speaker."""

    speaker: str
    speaking_seconds: float = 0.0
    segment_count: int = 0


class Chapter(BaseModel):
    """AI-generated chapter marker."""

    title: str
    summary: str = ''
    start_time: float = Field(default=0.0, ge=0.0)
    end_time: float | None = None


class ContentItem(BaseModel):
    """
    A unit of ingested content tracked through the processing pipeline.

    Owned by an organization. Mutated only by the orchestrator and the
    stage executors, except for user edits on action items.
    """

    # Identity
    id: str = Field(default_factory=lambda: str(uuid4()))
    organization_id: str = Field(..., description='Owning organization')
    source_type: SourceType
    external_id: str | None = Field(
        default=None, description='Identifier of the item in its source system'
    )

    # Content
    title: str = ''
    raw_payload_ref: str | None = Field(
        default=None, description='Opaque reference to the raw payload held by the source'
    )
    media_ref: str | None = Field(default=None, description='Downloadable media URL')
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Stage outputs
    transcript: str | None = None
    transcript_segments: list[TranscriptSegment] | None = None
    duration_seconds: float | None = None
    speakers: list[SpeakerSummary] = Field(default_factory=list)
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)

    # Processing state
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_error: str | None = None
    error_kind: ErrorKind | None = None
    failed_stage: PipelineStage | None = None
    attempt: int = Field(default=0, ge=0)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())

    def status_view(self) -> 'ProcessingStatusView':
        return ProcessingStatusView.from_item(self)


class ProcessingPhase(str, Enum):
    """User-facing summary of where an item stands."""

    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED_RETRYABLE = 'failed_retryable'
    FAILED_UNSUPPORTED = 'failed_unsupported'


class ProcessingStatusView(BaseModel):
    """What GetProcessingStatus returns."""

    content_item_id: str
    status: ProcessingStatus
    error: str | None = None
    error_kind: ErrorKind | None = None
    failed_stage: PipelineStage | None = None
    attempt: int = 0
    phase: ProcessingPhase
    updated_at: datetime | None = None

    @property
    def retryable(self) -> bool:
        return self.phase == ProcessingPhase.FAILED_RETRYABLE

    @classmethod
    def from_item(cls, item: ContentItem) -> 'ProcessingStatusView':
        status = item.processing_status
        if status == ProcessingStatus.PENDING:
            phase = ProcessingPhase.PENDING
        elif status == ProcessingStatus.COMPLETED:
            phase = ProcessingPhase.COMPLETED
        elif status == ProcessingStatus.FAILED:
            phase = (
                ProcessingPhase.FAILED_UNSUPPORTED
                if item.error_kind == ErrorKind.FATAL_INPUT
                else ProcessingPhase.FAILED_RETRYABLE
            )
        else:
            phase = ProcessingPhase.PROCESSING

        return cls(
            content_item_id=item.id,
            status=status,
            error=item.processing_error,
            error_kind=item.error_kind,
            failed_stage=item.failed_stage,
            attempt=item.attempt,
            phase=phase,
            updated_at=item.updated_at,
        )
