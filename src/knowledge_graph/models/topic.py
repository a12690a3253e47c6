"""
Topic model.

A Topic is a named cluster of semantically related content items within an
organization. Topics are deduplicated by ``normalized_name`` (unique per
organization) and matched across clustering runs by name or keyword
overlap, so re-running the builder updates topics instead of duplicating them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class TopicTrend(str, Enum):
    """Direction of activity on a topic over the recent windows."""

    RISING = 'rising'
    STABLE = 'stable'
    DECLINING = 'declining'


class Topic(BaseModel):
    """
    Named cluster of content items.

    Membership (topic -> content item ids) is stored alongside the topic and
    replaced wholesale on each rebuild.
    """

    # Identity
    id: str = Field(default_factory=lambda: str(uuid4()))
    organization_id: str = Field(..., description='Owning organization')

    # Naming
    name: str = Field(..., min_length=1, max_length=100, description='Display name')
    normalized_name: str = Field(
        ..., description='Lowercased, whitespace-collapsed name; unique per organization'
    )
    description: str = ''
    keywords: list[str] = Field(default_factory=list, description='Common tags of the members')

    # Membership
    content_item_ids: list[str] = Field(default_factory=list)
    content_count: int = Field(default=0, ge=0)
    centroid: list[float] | None = Field(
        default=None, description='Mean embedding of the member items'
    )

    # Activity
    trend: TopicTrend = TopicTrend.STABLE
    trend_score: float = Field(default=0.0, ge=-1.0, le=1.0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def normalize_name(cls, name: str) -> str:
        """
        Convert a topic name to its normalized form.

        Args:
            name: Raw topic name

        Returns:
            Normalized name (lowercase, trimmed, single spaces)
        """
        return ' '.join(name.lower().strip().split())

    @classmethod
    def create(cls, organization_id: str, name: str, **kwargs: Any) -> 'Topic':
        return cls(
            organization_id=organization_id,
            name=name,
            normalized_name=cls.normalize_name(name),
            **kwargs,
        )

    def to_neo4j_properties(self) -> dict[str, Any]:
        """Convert to a Neo4j-compatible property dict (membership stored as edges)."""
        props = {
            'id': self.id,
            'organization_id': self.organization_id,
            'name': self.name,
            'normalized_name': self.normalized_name,
            'description': self.description,
            'keywords': self.keywords,
            'content_count': self.content_count,
            'centroid': self.centroid,
            'trend': self.trend.value,
            'trend_score': self.trend_score,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }
        return {k: v for k, v in props.items() if v is not None}
