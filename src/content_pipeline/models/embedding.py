"""
Embedding records held by the embedding index.

An owner (a content item's transcript, or a decision) has a *set* of
embeddings. Sets are immutable: re-embedding an owner replaces the whole set.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OwnerType(str, Enum):
    """What an embedding represents."""

    TRANSCRIPT_CHUNK = 'transcript_chunk'
    DECISION = 'decision'


class Embedding(BaseModel):
    """One vector plus the text and metadata it was computed from."""

    model_config = ConfigDict(frozen=True)

    owner_type: OwnerType
    owner_id: str = Field(..., description='Content item id for chunks, decision id for decisions')
    organization_id: str
    vector: tuple[float, ...]
    source_text: str

    chunk_index: int = 0
    content_item_id: str | None = Field(
        default=None, description='Content item the text came from (set for both owner types)'
    )
    source_type: str | None = None
    tags: tuple[str, ...] = ()
    timestamp_start: float | None = None
    timestamp_end: float | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def dimensions(self) -> int:
        return len(self.vector)


class SearchResult(BaseModel):
    """A ranked hit from the embedding index."""

    owner_type: OwnerType
    owner_id: str
    content_item_id: str | None
    chunk_index: int
    similarity: float = Field(..., ge=0.0, le=1.0)
    source_text: str
    source_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    timestamp_start: float | None = None
    timestamp_end: float | None = None
    updated_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_embedding(cls, embedding: Embedding, similarity: float) -> 'SearchResult':
        return cls(
            owner_type=embedding.owner_type,
            owner_id=embedding.owner_id,
            content_item_id=embedding.content_item_id,
            chunk_index=embedding.chunk_index,
            similarity=min(max(similarity, 0.0), 1.0),
            source_text=embedding.source_text,
            source_type=embedding.source_type,
            tags=list(embedding.tags),
            timestamp_start=embedding.timestamp_start,
            timestamp_end=embedding.timestamp_end,
            updated_at=embedding.updated_at,
        )
