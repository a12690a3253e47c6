"""Service wiring shared by the lifespan handler and the routes."""

from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from knowledge_graph.builder import KnowledgeGraphBuilder
from knowledge_graph.clients.neo4j_client import Neo4jClient
from knowledge_graph.clustering import TopicClusterer
from knowledge_graph.conflicts import ConflictDetector, LLMConflictClassifier
from knowledge_graph.repository import (
    InMemoryKnowledgeGraphRepository,
    KnowledgeGraphRepository,
    Neo4jKnowledgeGraphRepository,
)

from ..clients.diarization_client import DiarizationClient
from ..clients.media_client import MediaClient
from ..clients.openai_client import OpenAIClient
from ..clients.postgres_client import PostgresClient
from ..config import config
from ..embedding_index import EmbeddingIndex, InMemoryEmbeddingIndex, PgVectorEmbeddingIndex
from ..pipeline.orchestrator import ProcessingOrchestrator
from ..repository import (
    ContentItemRepository,
    InMemoryContentItemRepository,
    PostgresContentItemRepository,
)
from ..search import SemanticSearchService
from ..stages import AnalysisStage, DiarizationStage, EmbeddingStage, TranscriptionStage
from .config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""

    repository: ContentItemRepository
    index: EmbeddingIndex
    orchestrator: ProcessingOrchestrator
    search: SemanticSearchService
    knowledge: KnowledgeGraphBuilder
    knowledge_repository: KnowledgeGraphRepository
    stale_after: timedelta = timedelta(minutes=60)

    postgres: PostgresClient | None = None
    neo4j: Neo4jClient | None = None
    closers: list = field(default_factory=list)

    async def start(self) -> None:
        await self.orchestrator.start()

    async def close(self) -> None:
        await self.orchestrator.stop(drain=False)
        for close in self.closers:
            await close()


def build_services(
    settings: Settings,
    openai: OpenAIClient,
    postgres: PostgresClient | None = None,
    neo4j: Neo4jClient | None = None,
) -> Services:
    """
    Wire repositories, stages, orchestrator and knowledge graph.

    Without Postgres the content store and embedding index are in-memory;
    without Neo4j the knowledge graph is in-memory.
    """
    if postgres is not None:
        repository: ContentItemRepository = PostgresContentItemRepository(postgres)
        index: EmbeddingIndex = PgVectorEmbeddingIndex(postgres)
    else:
        repository = InMemoryContentItemRepository()
        index = InMemoryEmbeddingIndex()

    if neo4j is not None:
        knowledge_repository: KnowledgeGraphRepository = Neo4jKnowledgeGraphRepository(neo4j)
    else:
        knowledge_repository = InMemoryKnowledgeGraphRepository()

    media = MediaClient(max_bytes=config.MAX_MEDIA_BYTES)
    diarization = DiarizationClient(api_key=settings.ASSEMBLYAI_API_KEY)
    stages = [
        TranscriptionStage(openai, media),
        DiarizationStage(diarization),
        AnalysisStage(openai),
        EmbeddingStage(
            openai,
            max_tokens=config.EMBEDDING_CHUNK_MAX_TOKENS,
            overlap_tokens=config.EMBEDDING_CHUNK_OVERLAP_TOKENS,
            fanout=config.EMBEDDING_FANOUT,
        ),
    ]

    orchestrator = ProcessingOrchestrator(
        repository=repository,
        index=index,
        stages=stages,
        knowledge_repository=knowledge_repository,
        max_attempts=settings.STAGE_MAX_ATTEMPTS,
        backoff_max_seconds=settings.STAGE_BACKOFF_MAX_SECONDS,
        concurrency=settings.WORKER_CONCURRENCY,
    )

    classifier = LLMConflictClassifier(openai) if settings.CONFLICT_LLM_CLASSIFIER else None
    knowledge = KnowledgeGraphBuilder(
        content_repository=repository,
        index=index,
        repository=knowledge_repository,
        clusterer=TopicClusterer(openai, use_ai_naming=settings.TOPIC_AI_NAMING),
        detector=ConflictDetector(
            knowledge_repository,
            index,
            classifier=classifier,
            embedder=openai.create_embeddings_batch,
            cache_results=settings.CONFLICT_CACHE,
        ),
    )
    orchestrator.add_hook(knowledge.on_item_completed)

    logger.info(
        'services.built',
        content_store='postgres' if postgres is not None else 'memory',
        knowledge_store='neo4j' if neo4j is not None else 'memory',
        diarization=diarization.is_configured,
    )
    return Services(
        repository=repository,
        index=index,
        orchestrator=orchestrator,
        search=SemanticSearchService(openai, index, repository),
        knowledge=knowledge,
        knowledge_repository=knowledge_repository,
        stale_after=timedelta(minutes=settings.STALE_AFTER_MINUTES),
        postgres=postgres,
        neo4j=neo4j,
        closers=[diarization.close, openai.close],
    )
