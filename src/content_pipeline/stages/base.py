"""
Stage executor interface.

A stage executor is a function of a ContentItem snapshot to a StageUpdate.
Executors hold clients but no per-item state, so any stage can be retried
on its own and tested in isolation. Persisting the update is the
orchestrator's job.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from knowledge_graph.models import Decision

from ..models.content_item import ContentItem, PipelineStage
from ..models.embedding import Embedding, OwnerType


@dataclass
class EmbeddingSet:
    """Complete replacement set of embeddings for one owner."""

    owner_type: OwnerType
    owner_id: str
    embeddings: list[Embedding]


@dataclass
class StageUpdate:
    """Partial update produced by a stage."""

    stage: PipelineStage
    fields: dict[str, Any] = field(default_factory=dict)
    embedding_sets: list[EmbeddingSet] = field(default_factory=list)
    decisions: list[Decision] | None = None
    skipped: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'stage': self.stage.value,
            'fields': sorted(self.fields),
            'embedding_sets': len(self.embedding_sets),
            'decisions': len(self.decisions) if self.decisions is not None else None,
            'skipped': self.skipped,
            **self.details,
        }


class StageExecutor(Protocol):
    """What the orchestrator needs from a stage."""

    stage: PipelineStage

    def should_run(self, item: ContentItem) -> bool:
        """False to skip the stage for this item (optional stages)."""
        ...

    async def run(self, item: ContentItem) -> StageUpdate:
        """Execute the stage. Raises StageError subclasses on failure."""
        ...
