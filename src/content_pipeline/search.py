"""
Semantic search over the embedding index.

The query text is embedded once, matched against transcript chunks and
decisions of one organization, and each hit is decorated with the title of
the content item it came from.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field

from .clients.openai_client import OpenAIClient
from .config import config
from .embedding_index import EmbeddingIndex, IndexQuery
from .errors import ValidationError
from .models.content_item import ContentItem
from .models.embedding import OwnerType, SearchResult
from .repository import ContentItemRepository
from .similarity import centroid
from .utils import bounded_gather

logger = structlog.get_logger(__name__)

SNIPPET_CHARS = 240


class SearchFilters(BaseModel):
    """Caller-side filters for SemanticSearch."""

    organization_id: str = Field(..., min_length=1)
    threshold: float = Field(default=config.SEARCH_DEFAULT_THRESHOLD, ge=0.0, le=1.0)
    limit: int = Field(default=10, ge=1, le=100)
    content_types: list[str] | None = Field(
        default=None, description='Source types to include (video, slack, notion, ...)'
    )
    owner_types: list[OwnerType] | None = None
    owner_ids: list[str] | None = None
    tags: list[str] | None = None

    def to_index_query(self) -> IndexQuery:
        return IndexQuery(
            organization_id=self.organization_id,
            threshold=self.threshold,
            limit=self.limit,
            content_types=self.content_types,
            owner_ids=self.owner_ids,
            owner_types=self.owner_types,
            tags=self.tags,
        )


class SearchHit(BaseModel):
    """One ranked search result as returned to callers."""

    owner_type: OwnerType
    owner_id: str
    content_item_id: str | None
    title: str | None = None
    similarity: float
    snippet: str
    chunk_index: int = 0
    source_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    timestamp_start: float | None = None
    timestamp_end: float | None = None


class SimilarItem(BaseModel):
    """A content item related to another by chunk centroid similarity."""

    content_item_id: str
    title: str | None = None
    similarity: float


@dataclass
class SearchResponse:
    query: str
    hits: list[SearchHit] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'query': self.query,
            'count': len(self.hits),
            'results': [h.model_dump(mode='json') for h in self.hits],
        }


def make_snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    text = ' '.join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(' ', 1)[0]
    return f"{cut}..."


class SemanticSearchService:
    """SemanticSearch and related-item lookups."""

    SIMILAR_ITEMS_THRESHOLD = 0.7

    def __init__(
        self,
        openai: OpenAIClient,
        index: EmbeddingIndex,
        repository: ContentItemRepository,
        fanout: int = 10,
    ):
        self.openai = openai
        self.index = index
        self.repository = repository
        self.fanout = fanout

    async def search(self, query: str, filters: SearchFilters) -> SearchResponse:
        """
        Embed ``query`` and return ranked hits at or above ``filters.threshold``.
        """
        query = query.strip()
        if not query:
            raise ValidationError('Search query must not be empty')

        vector = await self.openai.create_embedding(query)
        results = await self.index.query(vector, filters.to_index_query())
        titles = await self._titles({r.content_item_id for r in results if r.content_item_id})

        hits = [self._to_hit(r, titles) for r in results]
        logger.info(
            'search.completed',
            organization_id=filters.organization_id,
            results=len(hits),
            threshold=filters.threshold,
        )
        return SearchResponse(query=query, hits=hits)

    async def find_similar_items(
        self,
        item_id: str,
        limit: int = 5,
        threshold: float | None = None,
    ) -> list[SimilarItem]:
        """
        Content items whose transcript chunks are close to this item's chunk centroid.

        The item itself is excluded; each related item is reported once with
        its best chunk similarity.
        """
        item = await self.repository.require(item_id)
        stored = await self.index.vectors_for(OwnerType.TRANSCRIPT_CHUNK, [item.id])
        chunks = stored.get(item.id, [])
        if not chunks:
            return []

        query_vector = centroid([c.vector for c in chunks])
        results = await self.index.query(
            query_vector,
            IndexQuery(
                organization_id=item.organization_id,
                threshold=threshold if threshold is not None else self.SIMILAR_ITEMS_THRESHOLD,
                # Chunks of one item crowd each other; over-fetch before grouping
                limit=max(limit * 10, 50),
                owner_types=[OwnerType.TRANSCRIPT_CHUNK],
                exclude_owner_ids=[item.id],
            ),
        )

        best: dict[str, float] = {}
        for r in results:
            if r.owner_id not in best:
                best[r.owner_id] = r.similarity

        related = list(best.items())[:limit]
        titles = await self._titles({owner_id for owner_id, _ in related})
        return [
            SimilarItem(content_item_id=owner_id, title=titles.get(owner_id), similarity=score)
            for owner_id, score in related
        ]

    async def _titles(self, item_ids: set[str]) -> dict[str, str]:
        ordered = sorted(item_ids)
        items: list[ContentItem | None] = await bounded_gather(
            (self.repository.get(i) for i in ordered), limit=self.fanout
        )
        return {i.id: i.title for i in items if i is not None}

    @staticmethod
    def _to_hit(result: SearchResult, titles: dict[str, str]) -> SearchHit:
        return SearchHit(
            owner_type=result.owner_type,
            owner_id=result.owner_id,
            content_item_id=result.content_item_id,
            title=titles.get(result.content_item_id) if result.content_item_id else None,
            similarity=round(result.similarity, 4),
            snippet=make_snippet(result.source_text),
            chunk_index=result.chunk_index,
            source_type=result.source_type,
            tags=result.tags,
            timestamp_start=result.timestamp_start,
            timestamp_end=result.timestamp_end,
        )
