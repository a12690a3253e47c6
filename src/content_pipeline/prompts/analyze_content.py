"""
Content analysis prompt and response models.

One structured-output call produces summary, tags, action items, chapters
and decisions for a transcript.
"""

from typing import Literal

from pydantic import BaseModel, Field

from ..models.content_item import TranscriptSegment

# Transcripts longer than this are truncated before prompting
MAX_TRANSCRIPT_CHARS = 48_000

MAX_TAGS = 10

PriorityType = Literal['high', 'medium', 'low']
DecisionStatusType = Literal['proposed', 'decided', 'implemented']


# =============================================================================
# Response Models for Structured Output
# =============================================================================


class ExtractedActionItem(BaseModel):
    """A task or commitment mentioned in the content."""

    title: str = Field(
        ...,
        description='A concise, actionable 1-sentence description of the task.',
    )
    assignee: str | None = Field(
        default=None,
        description='The person responsible, exactly as named in the content. Null if nobody '
        'took ownership.',
    )
    priority: PriorityType = Field(
        default='medium',
        description='"high" for blocking or urgent work, "low" for nice-to-haves, otherwise "medium".',
    )
    due_date: str | None = Field(
        default=None,
        description='ISO-8601 date (YYYY-MM-DD) if a concrete deadline was stated, else null.',
    )
    timestamp: float | None = Field(
        default=None,
        description='Start time in seconds of the segment where the task was mentioned. Null for '
        'content without timestamps.',
    )
    confidence: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description='Confidence (0.0 to 1.0) that this is a real commitment.',
    )


class ExtractedChapter(BaseModel):
    """A key moment / section of the content."""

    title: str = Field(..., description='Short chapter title (2-6 words).')
    summary: str = Field(default='', description='One sentence describing the chapter.')
    start_time: float = Field(default=0.0, ge=0.0, description='Chapter start in seconds.')
    end_time: float | None = Field(default=None, description='Chapter end in seconds.')


class ExtractedDecision(BaseModel):
    """An outcome or choice the participants settled on."""

    summary: str = Field(
        ...,
        description='Clear statement of what was decided, e.g. "Use Postgres for storage".',
    )
    context: str = Field(
        default='',
        description='What the decision applies to (system, team, project area).',
    )
    reasoning: str = Field(default='', description='Why it was decided, if stated.')
    status: DecisionStatusType = Field(
        default='decided',
        description='"proposed" if only suggested, "decided" if agreed, "implemented" if already done.',
    )
    tags: list[str] = Field(default_factory=list, description='1-3 lowercase topic tags.')


class AnalysisResult(BaseModel):
    """Complete analysis of one content item."""

    summary: str = Field(..., description='3-5 sentence summary of the content.')
    tags: list[str] = Field(
        default_factory=list,
        description=f'Up to {MAX_TAGS} lowercase topical tags.',
    )
    action_items: list[ExtractedActionItem] = Field(default_factory=list)
    chapters: list[ExtractedChapter] = Field(
        default_factory=list,
        description='3-8 chapters covering the content in order. Empty for short text content.',
    )
    decisions: list[ExtractedDecision] = Field(default_factory=list)


# =============================================================================
# Prompt Templates
# =============================================================================

ANALYSIS_SYSTEM_PROMPT = """You analyze recordings, chat threads, documents and issues for a team knowledge base.

Produce:
- **summary**: 3-5 sentences covering what the content is about and its outcome
- **tags**: up to 10 short lowercase tags (e.g. "database", "hiring", "q3-roadmap")
- **action_items**: concrete tasks someone committed to or was asked to do
- **chapters**: logical sections with start/end times (timestamped content only)
- **decisions**: outcomes the participants agreed on or explicitly proposed

Guidelines:
- Do NOT extract vague intentions ("we should think about...") as action items
- Use timestamps from the [mm:ss] markers when present
- State decisions so they can be compared later: name the choice and what it applies to
  ("Use Postgres for storage", not "We agreed on that")
- If there are no action items or decisions, return empty lists"""

ANALYSIS_USER_PROMPT_TEMPLATE = """Analyze the following content.

Title: {title}
{additional_context}
<content>
{content}
</content>"""


def format_timestamp(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def format_segments(segments: list[TranscriptSegment]) -> str:
    """Render segments as ``[mm:ss] Speaker: text`` lines."""
    lines = []
    for segment in segments:
        speaker = f"{segment.speaker}: " if segment.speaker else ''
        lines.append(f"[{format_timestamp(segment.start)}] {speaker}{segment.text}")
    return '\n'.join(lines)


def truncate(content: str, limit: int = MAX_TRANSCRIPT_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit].rsplit(' ', 1)[0] + '\n[truncated]'


def build_analysis_prompt(
    transcript: str,
    title: str,
    segments: list[TranscriptSegment] | None = None,
    participants: list[str] | None = None,
) -> list[dict[str, str]]:
    """
    Build the analysis prompt messages for OpenAI.

    Args:
        transcript: Plain transcript / document text
        title: Content title
        segments: Timed segments; preferred over plain text when present
        participants: Optional participant names

    Returns:
        List of message dicts for OpenAI chat completion
    """
    content = format_segments(segments) if segments else transcript
    additional_context = f"Participants: {', '.join(participants)}\n" if participants else ''

    user_prompt = ANALYSIS_USER_PROMPT_TEMPLATE.format(
        title=title or 'Untitled',
        additional_context=additional_context,
        content=truncate(content),
    )
    return [
        {'role': 'system', 'content': ANALYSIS_SYSTEM_PROMPT},
        {'role': 'user', 'content': user_prompt},
    ]
