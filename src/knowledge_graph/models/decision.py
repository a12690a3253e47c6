"""
Decision and DecisionConflict models.

Decisions are extracted by the analysis stage and stored per content item
(delete-and-replace on reprocessing). Conflicts are derived on demand from
pairs of decisions and are informational only.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class DecisionStatus(str, Enum):
    PROPOSED = 'proposed'
    DECIDED = 'decided'
    IMPLEMENTED = 'implemented'
    REVISITED = 'revisited'
    SUPERSEDED = 'superseded'


# Statuses considered by conflict detection
ACTIVE_DECISION_STATUSES = frozenset(
    {DecisionStatus.PROPOSED, DecisionStatus.DECIDED, DecisionStatus.IMPLEMENTED}
)


class Decision(BaseModel):
    """A recorded outcome or choice extracted from content."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    organization_id: str
    content_item_id: str | None = Field(
        default=None, description='Content item the decision was extracted from'
    )

    summary: str = Field(..., min_length=1, description='What was decided')
    context: str = Field(default='', description='Scope / background of the decision')
    reasoning: str = Field(default='', description='Why it was decided')
    status: DecisionStatus = DecisionStatus.DECIDED
    decided_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def effective_at(self) -> datetime:
        """When the decision took effect, for ordering earlier vs. later."""
        return self.decided_at or self.created_at

    def embedding_text(self) -> str:
        """Text embedded for conflict detection."""
        text = self.summary.rstrip('.') + '.'
        if self.reasoning:
            text += f" {self.reasoning}"
        if self.context:
            text += f" Context: {self.context}"
        return text

    def to_neo4j_properties(self) -> dict[str, Any]:
        props = {
            'id': self.id,
            'organization_id': self.organization_id,
            'content_item_id': self.content_item_id,
            'summary': self.summary,
            'context': self.context,
            'reasoning': self.reasoning,
            'status': self.status.value,
            'decided_at': self.decided_at.isoformat() if self.decided_at else None,
            'tags': self.tags,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }
        return {k: v for k, v in props.items() if v is not None}


class ConflictType(str, Enum):
    DIRECT_CONTRADICTION = 'direct_contradiction'
    SUPERSESSION_UNCLEAR = 'supersession_unclear'
    SCOPE_OVERLAP = 'scope_overlap'


class DecisionConflict(BaseModel):
    """
    A detected inconsistency between two decisions.

    ``decision_a_id`` is always the earlier decision so that the same pair is
    reported identically across runs.
    """

    organization_id: str
    decision_a_id: str
    decision_b_id: str
    conflict_type: ConflictType
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str
    similarity: float = Field(..., ge=0.0, le=1.0)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.decision_a_id, self.decision_b_id)
