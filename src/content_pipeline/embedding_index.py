"""
Embedding index.

Stores embedding sets per owner and serves cosine nearest-neighbour queries.

Guarantees:
- ``upsert`` replaces an owner's whole set in one logical operation; a
  concurrent query sees either the old set or the new one, never a mix
- ``threshold`` is a hard lower bound on similarity
- equal similarity is broken by the more recently updated source, then by
  owner id and chunk index so ranking is deterministic
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy import text

from .clients.postgres_client import PostgresClient, embedding_to_pgvector, pgvector_to_embedding
from .errors import ValidationError
from .models.embedding import Embedding, OwnerType, SearchResult
from .similarity import cosine_similarities

logger = structlog.get_logger(__name__)


@dataclass
class IndexQuery:
    """Parameters of a nearest-neighbour query."""

    organization_id: str
    threshold: float = 0.7
    limit: int = 10
    content_types: Sequence[str] | None = None
    owner_ids: Sequence[str] | None = None
    exclude_owner_ids: Sequence[str] | None = None
    owner_types: Sequence[OwnerType] | None = None
    tags: Sequence[str] | None = None

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ValidationError('threshold must be within [0, 1]', context={'threshold': self.threshold})
        if self.limit < 1:
            raise ValidationError('limit must be positive', context={'limit': self.limit})


def rank_key(result: SearchResult) -> tuple:
    """Sort key: similarity desc, updated_at desc, then owner id / chunk for stability."""
    return (-result.similarity, -result.updated_at.timestamp(), result.owner_id, result.chunk_index)


def _validate_set(owner_type: OwnerType, owner_id: str, embeddings: Sequence[Embedding]) -> None:
    if not embeddings:
        return
    organization_ids = {e.organization_id for e in embeddings}
    dimensions = {e.dimensions for e in embeddings}
    foreign = [e for e in embeddings if e.owner_type != owner_type or e.owner_id != owner_id]
    if foreign:
        raise ValidationError(
            'Embedding set contains vectors for another owner',
            context={'owner_type': owner_type.value, 'owner_id': owner_id},
        )
    if len(organization_ids) > 1:
        raise ValidationError(
            'Embedding set spans organizations', context={'owner_id': owner_id}
        )
    if len(dimensions) > 1:
        raise ValidationError(
            'Embedding set has mixed dimensions',
            context={'owner_id': owner_id, 'dimensions': sorted(dimensions)},
        )
    indexes = [e.chunk_index for e in embeddings]
    if len(set(indexes)) != len(indexes):
        raise ValidationError('Duplicate chunk_index in embedding set', context={'owner_id': owner_id})


class EmbeddingIndex(ABC):
    """Vector store interface."""

    @abstractmethod
    async def upsert(
        self,
        owner_type: OwnerType,
        owner_id: str,
        embeddings: Sequence[Embedding],
    ) -> int:
        """
        Replace every embedding of an owner with ``embeddings``.

        An empty sequence deletes the owner's set. Returns the number of
        vectors written.
        """

    @abstractmethod
    async def query(self, vector: Sequence[float], params: IndexQuery) -> list[SearchResult]:
        """Ranked results at or above ``params.threshold``."""

    @abstractmethod
    async def vectors_for(
        self, owner_type: OwnerType, owner_ids: Iterable[str]
    ) -> dict[str, list[Embedding]]:
        """Stored sets for the given owners, keyed by owner id (missing owners omitted)."""

    @abstractmethod
    async def list_vectors(
        self, organization_id: str, owner_type: OwnerType | None = None
    ) -> list[Embedding]:
        """All embeddings of an organization, optionally limited to one owner type."""

    async def delete_owner(self, owner_type: OwnerType, owner_id: str) -> None:
        await self.upsert(owner_type, owner_id, [])


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryEmbeddingIndex(EmbeddingIndex):
    """
    Dict of owner -> immutable tuple of embeddings.

    Replacing a set is a single dict assignment of a new tuple, so readers
    iterating a snapshot always hold one complete set per owner.
    """

    def __init__(self, dimensions: int | None = None):
        self.dimensions = dimensions
        self._sets: dict[tuple[OwnerType, str], tuple[Embedding, ...]] = {}
        self._lock = asyncio.Lock()

    async def upsert(
        self,
        owner_type: OwnerType,
        owner_id: str,
        embeddings: Sequence[Embedding],
    ) -> int:
        _validate_set(owner_type, owner_id, embeddings)
        if self.dimensions is not None and any(e.dimensions != self.dimensions for e in embeddings):
            raise ValidationError(
                'Embedding dimensions do not match the index',
                context={'expected': self.dimensions, 'owner_id': owner_id},
            )

        new_set = tuple(sorted(embeddings, key=lambda e: e.chunk_index))
        async with self._lock:
            if new_set:
                self._sets[(owner_type, owner_id)] = new_set
            else:
                self._sets.pop((owner_type, owner_id), None)

        logger.debug(
            'embedding_index.upserted',
            owner_type=owner_type.value,
            owner_id=owner_id,
            count=len(new_set),
        )
        return len(new_set)

    async def query(self, vector: Sequence[float], params: IndexQuery) -> list[SearchResult]:
        content_types = set(params.content_types) if params.content_types else None
        owner_ids = set(params.owner_ids) if params.owner_ids else None
        excluded = set(params.exclude_owner_ids or ())
        owner_types = set(params.owner_types) if params.owner_types else None
        tags = set(params.tags) if params.tags else None

        # Snapshot of complete sets
        snapshot = list(self._sets.values())

        candidates: list[Embedding] = []
        for embedding_set in snapshot:
            for e in embedding_set:
                if e.organization_id != params.organization_id:
                    continue
                if e.dimensions != len(vector):
                    continue
                if content_types is not None and e.source_type not in content_types:
                    continue
                if owner_ids is not None and e.owner_id not in owner_ids:
                    continue
                if e.owner_id in excluded:
                    continue
                if owner_types is not None and e.owner_type not in owner_types:
                    continue
                if tags is not None and not tags.intersection(e.tags):
                    continue
                candidates.append(e)

        if not candidates:
            return []

        scores = cosine_similarities(vector, [e.vector for e in candidates])
        results = [
            SearchResult.from_embedding(e, float(score))
            for e, score in zip(candidates, scores)
            if score >= params.threshold
        ]
        results.sort(key=rank_key)
        return results[: params.limit]

    async def vectors_for(
        self, owner_type: OwnerType, owner_ids: Iterable[str]
    ) -> dict[str, list[Embedding]]:
        found: dict[str, list[Embedding]] = {}
        for owner_id in owner_ids:
            embedding_set = self._sets.get((owner_type, owner_id))
            if embedding_set:
                found[owner_id] = list(embedding_set)
        return found

    async def list_vectors(
        self, organization_id: str, owner_type: OwnerType | None = None
    ) -> list[Embedding]:
        return [
            e
            for (kind, _), embedding_set in list(self._sets.items())
            if owner_type is None or kind == owner_type
            for e in embedding_set
            if e.organization_id == organization_id
        ]


# =============================================================================
# pgvector implementation
# =============================================================================

_SELECT_COLUMNS = """
    owner_type, owner_id, chunk_index, organization_id, content_item_id,
    source_type, source_text, tags, timestamp_start, timestamp_end,
    embedding::text AS embedding, updated_at
"""


def _row_to_embedding(row) -> Embedding:
    data = dict(row._mapping)
    tags = data.get('tags') or []
    if isinstance(tags, str):
        tags = json.loads(tags)
    return Embedding(
        owner_type=OwnerType(data['owner_type']),
        owner_id=data['owner_id'],
        organization_id=data['organization_id'],
        vector=pgvector_to_embedding(data['embedding']),
        source_text=data['source_text'],
        chunk_index=data['chunk_index'],
        content_item_id=data.get('content_item_id'),
        source_type=data.get('source_type'),
        tags=tuple(tags),
        timestamp_start=data.get('timestamp_start'),
        timestamp_end=data.get('timestamp_end'),
        updated_at=data['updated_at'],
    )


class PgVectorEmbeddingIndex(EmbeddingIndex):
    """Embeddings in the ``embeddings`` table; cosine distance via ``<=>``."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    async def upsert(
        self,
        owner_type: OwnerType,
        owner_id: str,
        embeddings: Sequence[Embedding],
    ) -> int:
        _validate_set(owner_type, owner_id, embeddings)

        delete_sql = text(
            'DELETE FROM embeddings WHERE owner_type = :owner_type AND owner_id = :owner_id'
        )
        insert_sql = text("""
            INSERT INTO embeddings (
                owner_type, owner_id, chunk_index, organization_id, content_item_id,
                source_type, source_text, tags, timestamp_start, timestamp_end,
                embedding, updated_at
            ) VALUES (
                :owner_type, :owner_id, :chunk_index, :organization_id, :content_item_id,
                :source_type, :source_text, CAST(:tags AS JSONB), :timestamp_start, :timestamp_end,
                CAST(:embedding AS vector), :updated_at
            )
        """)
        rows = [
            {
                'owner_type': e.owner_type.value,
                'owner_id': e.owner_id,
                'chunk_index': e.chunk_index,
                'organization_id': e.organization_id,
                'content_item_id': e.content_item_id,
                'source_type': e.source_type,
                'source_text': e.source_text,
                'tags': json.dumps(list(e.tags)),
                'timestamp_start': e.timestamp_start,
                'timestamp_end': e.timestamp_end,
                'embedding': embedding_to_pgvector(e.vector),
                'updated_at': e.updated_at,
            }
            for e in embeddings
        ]

        # One transaction: readers see the old set until commit
        async with self.postgres.engine.begin() as conn:
            await conn.execute(delete_sql, {'owner_type': owner_type.value, 'owner_id': owner_id})
            if rows:
                await conn.execute(insert_sql, rows)

        logger.debug(
            'embedding_index.upserted',
            owner_type=owner_type.value,
            owner_id=owner_id,
            count=len(rows),
        )
        return len(rows)

    async def query(self, vector: Sequence[float], params: IndexQuery) -> list[SearchResult]:
        conditions = ['organization_id = :organization_id']
        sql_params: dict[str, object] = {
            'organization_id': params.organization_id,
            'query': embedding_to_pgvector(list(vector)),
            'threshold': params.threshold,
            'limit': params.limit,
        }
        if params.content_types:
            conditions.append('source_type = ANY(CAST(:content_types AS TEXT[]))')
            sql_params['content_types'] = list(params.content_types)
        if params.owner_ids:
            conditions.append('owner_id = ANY(CAST(:owner_ids AS TEXT[]))')
            sql_params['owner_ids'] = list(params.owner_ids)
        if params.exclude_owner_ids:
            conditions.append('owner_id <> ALL(CAST(:exclude_owner_ids AS TEXT[]))')
            sql_params['exclude_owner_ids'] = list(params.exclude_owner_ids)
        if params.owner_types:
            conditions.append('owner_type = ANY(CAST(:owner_types AS TEXT[]))')
            sql_params['owner_types'] = [t.value for t in params.owner_types]
        if params.tags:
            conditions.append('tags ?| CAST(:tags AS TEXT[])')
            sql_params['tags'] = list(params.tags)

        sql = text(f"""
            SELECT {_SELECT_COLUMNS},
                   GREATEST(0, 1 - (embedding <=> CAST(:query AS vector))) AS similarity
            FROM embeddings
            WHERE {' AND '.join(conditions)}
              AND 1 - (embedding <=> CAST(:query AS vector)) >= :threshold
            ORDER BY similarity DESC, updated_at DESC, owner_id, chunk_index
            LIMIT :limit
        """)
        async with self.postgres.engine.connect() as conn:
            rows = (await conn.execute(sql, sql_params)).all()

        return [
            SearchResult.from_embedding(_row_to_embedding(r), float(r._mapping['similarity']))
            for r in rows
        ]

    async def vectors_for(
        self, owner_type: OwnerType, owner_ids: Iterable[str]
    ) -> dict[str, list[Embedding]]:
        ids = list(owner_ids)
        if not ids:
            return {}
        sql = text(f"""
            SELECT {_SELECT_COLUMNS}
            FROM embeddings
            WHERE owner_type = :owner_type AND owner_id = ANY(CAST(:owner_ids AS TEXT[]))
            ORDER BY owner_id, chunk_index
        """)
        async with self.postgres.engine.connect() as conn:
            rows = (await conn.execute(sql, {'owner_type': owner_type.value, 'owner_ids': ids})).all()

        found: dict[str, list[Embedding]] = {}
        for row in rows:
            embedding = _row_to_embedding(row)
            found.setdefault(embedding.owner_id, []).append(embedding)
        return found

    async def list_vectors(
        self, organization_id: str, owner_type: OwnerType | None = None
    ) -> list[Embedding]:
        sql = text(f"""
            SELECT {_SELECT_COLUMNS}
            FROM embeddings
            WHERE organization_id = :organization_id
              AND (CAST(:owner_type AS TEXT) IS NULL OR owner_type = :owner_type)
            ORDER BY owner_type, owner_id, chunk_index
        """)
        params = {
            'organization_id': organization_id,
            'owner_type': owner_type.value if owner_type else None,
        }
        async with self.postgres.engine.connect() as conn:
            rows = (await conn.execute(sql, params)).all()
        return [_row_to_embedding(r) for r in rows]
