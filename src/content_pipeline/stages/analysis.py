"""
Analysis stage.

One structured-output call over the transcript produces summary, tags,
action items, chapters and decisions. The output replaces AI-derived fields
only; action items are merged with stored ones by the repository so user
edits survive.

Decisions are returned together with their embeddings so conflict detection
can compare them without re-embedding.
"""

from datetime import date, datetime, time, timezone

import structlog

from knowledge_graph.models import Decision, DecisionStatus

from ..clients.openai_client import OpenAIClient
from ..errors import FatalInputError, classify_exception
from ..models.action_item import ActionItem, ActionItemPriority
from ..models.content_item import Chapter, ContentItem, PipelineStage
from ..models.embedding import Embedding, OwnerType
from ..prompts.analyze_content import MAX_TAGS, AnalysisResult, build_analysis_prompt
from .base import EmbeddingSet, StageUpdate

logger = structlog.get_logger(__name__)


def normalize_tags(tags: list[str], limit: int = MAX_TAGS) -> list[str]:
    """Lowercase, trim, dedupe (order kept), cap at ``limit``."""
    seen: dict[str, None] = {}
    for tag in tags:
        cleaned = ' '.join(tag.lower().strip().lstrip('#').split())
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)[:limit]


def parse_due_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.combine(date.fromisoformat(value[:10]), time(), tzinfo=timezone.utc)
    except ValueError:
        return None


class AnalysisStage:
    """Transcript + title -> summary, tags, action items, chapters, decisions."""

    stage = PipelineStage.ANALYSIS

    def __init__(self, openai: OpenAIClient):
        self.openai = openai

    def should_run(self, item: ContentItem) -> bool:
        return True

    async def run(self, item: ContentItem) -> StageUpdate:
        if not item.has_transcript:
            raise FatalInputError(
                'Nothing to analyze: content item has no transcript or text',
                stage=self.stage.value,
                context={'content_item_id': item.id},
            )

        messages = build_analysis_prompt(
            transcript=item.transcript or '',
            title=item.title,
            segments=item.transcript_segments,
            participants=item.metadata.get('participant_names'),
        )
        try:
            result = await self.openai.chat_completion_structured(
                messages=messages,
                response_model=AnalysisResult,
            )
        except Exception as e:
            raise classify_exception(e, stage=self.stage.value) from e

        action_items = [
            ActionItem(
                content_item_id=item.id,
                title=extracted.title.strip(),
                assignee=extracted.assignee,
                priority=ActionItemPriority(extracted.priority),
                due_date=parse_due_date(extracted.due_date),
                timestamp_start=extracted.timestamp if extracted.timestamp is not None and extracted.timestamp >= 0 else None,
                confidence=extracted.confidence,
            )
            for extracted in result.action_items
            if extracted.title.strip()
        ]
        chapters = [
            Chapter(
                title=c.title,
                summary=c.summary,
                start_time=c.start_time,
                end_time=c.end_time,
            )
            for c in sorted(result.chapters, key=lambda c: c.start_time)
        ]
        decisions = [
            Decision(
                organization_id=item.organization_id,
                content_item_id=item.id,
                summary=d.summary.strip(),
                context=d.context,
                reasoning=d.reasoning,
                status=DecisionStatus(d.status),
                decided_at=item.created_at,
                tags=normalize_tags(d.tags, limit=3),
            )
            for d in result.decisions
            if d.summary.strip()
        ]

        embedding_sets = await self._embed_decisions(item, decisions)

        logger.info(
            'analysis.completed',
            action_items=len(action_items),
            chapters=len(chapters),
            decisions=len(decisions),
        )
        return StageUpdate(
            stage=self.stage,
            fields={
                'summary': result.summary,
                'tags': normalize_tags(result.tags),
                'action_items': action_items,
                'chapters': chapters,
            },
            decisions=decisions,
            embedding_sets=embedding_sets,
            details={'action_items': len(action_items), 'decisions': len(decisions)},
        )

    async def _embed_decisions(
        self, item: ContentItem, decisions: list[Decision]
    ) -> list[EmbeddingSet]:
        if not decisions:
            return []
        texts = [d.embedding_text() for d in decisions]
        try:
            vectors = await self.openai.create_embeddings_batch(texts)
        except Exception as e:
            raise classify_exception(e, stage=self.stage.value) from e

        return [
            EmbeddingSet(
                owner_type=OwnerType.DECISION,
                owner_id=decision.id,
                embeddings=[
                    Embedding(
                        owner_type=OwnerType.DECISION,
                        owner_id=decision.id,
                        organization_id=item.organization_id,
                        vector=tuple(vector),
                        source_text=text,
                        content_item_id=item.id,
                        source_type=item.source_type.value,
                        tags=tuple(decision.tags),
                    )
                ],
            )
            for decision, text, vector in zip(decisions, texts, vectors)
        ]
