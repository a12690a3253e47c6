"""
Embedding stage.

Chunks the transcript deterministically and embeds every chunk. The
resulting set replaces the item's previous transcript embeddings as a
whole. Embedding requests go out in batches with bounded fan-out.
"""

import structlog

from ..clients.openai_client import OpenAIClient
from ..errors import FatalInputError, classify_exception
from ..models.content_item import ContentItem, PipelineStage
from ..models.embedding import Embedding, OwnerType
from ..utils import bounded_gather
from .base import EmbeddingSet, StageUpdate
from .chunking import DEFAULT_MAX_TOKENS, DEFAULT_OVERLAP_TOKENS, chunk_transcript

logger = structlog.get_logger(__name__)

EMBEDDING_BATCH_SIZE = 100


class EmbeddingStage:
    """Transcript -> one embedding per chunk (owner_type=transcript_chunk)."""

    stage = PipelineStage.EMBEDDING

    def __init__(
        self,
        openai: OpenAIClient,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        fanout: int = 10,
    ):
        self.openai = openai
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.batch_size = batch_size
        self.fanout = fanout

    def should_run(self, item: ContentItem) -> bool:
        return True

    async def run(self, item: ContentItem) -> StageUpdate:
        if not item.has_transcript:
            raise FatalInputError(
                'Nothing to embed: content item has no transcript or text',
                stage=self.stage.value,
                context={'content_item_id': item.id},
            )

        chunks = chunk_transcript(
            item.transcript or '',
            item.transcript_segments,
            max_tokens=self.max_tokens,
            overlap_tokens=self.overlap_tokens,
        )
        texts = [c.text for c in chunks]
        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]

        try:
            results = await bounded_gather(
                (self.openai.create_embeddings_batch(batch) for batch in batches),
                limit=self.fanout,
            )
        except Exception as e:
            raise classify_exception(e, stage=self.stage.value) from e

        vectors = [vector for batch in results for vector in batch]
        if len(vectors) != len(chunks):
            raise classify_exception(
                ValueError(f"Expected {len(chunks)} embeddings, got {len(vectors)}"),
                stage=self.stage.value,
            )

        embeddings = [
            Embedding(
                owner_type=OwnerType.TRANSCRIPT_CHUNK,
                owner_id=item.id,
                organization_id=item.organization_id,
                vector=tuple(vector),
                source_text=chunk.text,
                chunk_index=chunk.index,
                content_item_id=item.id,
                source_type=item.source_type.value,
                tags=tuple(item.tags),
                timestamp_start=chunk.start,
                timestamp_end=chunk.end,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        logger.info('embedding.completed', chunks=len(chunks), batches=len(batches))
        return StageUpdate(
            stage=self.stage,
            embedding_sets=[
                EmbeddingSet(
                    owner_type=OwnerType.TRANSCRIPT_CHUNK,
                    owner_id=item.id,
                    embeddings=embeddings,
                )
            ],
            details={'chunks': len(chunks)},
        )
