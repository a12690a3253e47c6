"""
Pytest configuration and shared fixtures.

Key fixtures:
- fake_openai: AsyncMock standing in for OpenAIClient (deterministic embeddings)
- repository / index / knowledge_repository: in-memory stores
- sample_organization_id, sample_transcript, text_item, media_item

Tests never talk to OpenAI, Postgres or Neo4j; every external client is mocked.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

# Load environment variables
from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / '.env'
if env_file.exists():
    load_dotenv(env_file)

from content_pipeline.api.services import Services
from content_pipeline.embedding_index import InMemoryEmbeddingIndex
from content_pipeline.models.content_item import ContentItem, SourceType
from content_pipeline.pipeline import ProcessingOrchestrator
from content_pipeline.repository import InMemoryContentItemRepository
from content_pipeline.search import SemanticSearchService
from knowledge_graph.builder import KnowledgeGraphBuilder
from knowledge_graph.clustering import TopicClusterer
from knowledge_graph.conflicts import ConflictDetector
from knowledge_graph.repository import InMemoryKnowledgeGraphRepository

EMBEDDING_DIMENSIONS = 4


def keyword_vector(text: str) -> list[float]:
    """
    Tiny deterministic embedding: one axis per keyword family.

    Texts about the same thing land on the same axis, so similarity tests
    can reason about the expected neighbours.
    """
    lowered = text.lower()
    vector = [
        1.0 if any(w in lowered for w in ('database', 'postgres', 'mongodb', 'storage')) else 0.0,
        1.0 if any(w in lowered for w in ('hiring', 'candidate', 'interview')) else 0.0,
        1.0 if any(w in lowered for w in ('deploy', 'release', 'rollout')) else 0.0,
        0.1,
    ]
    return vector


@pytest.fixture
def fake_openai() -> MagicMock:
    """OpenAIClient double with keyword-based embeddings."""
    client = MagicMock()
    client.create_embedding = AsyncMock(side_effect=lambda text, **_: keyword_vector(text))
    client.create_embeddings_batch = AsyncMock(
        side_effect=lambda texts, **_: [keyword_vector(t) for t in texts]
    )
    client.chat_completion_structured = AsyncMock()
    client.transcribe_audio = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def repository() -> InMemoryContentItemRepository:
    return InMemoryContentItemRepository()


@pytest.fixture
def index() -> InMemoryEmbeddingIndex:
    return InMemoryEmbeddingIndex()


@pytest.fixture
def knowledge_repository() -> InMemoryKnowledgeGraphRepository:
    return InMemoryKnowledgeGraphRepository()


@pytest.fixture
def sample_organization_id() -> str:
    """Sample organization ID for testing."""
    return 'org_test_001'


@pytest.fixture
def sample_transcript() -> str:
    """Sample transcript for testing analysis and chunking."""
    return """
Maya: Thanks for joining. We need to settle the database for the new billing service.
Leo: I benchmarked Postgres last week and it handled our write load fine.
Maya: Great. Then we use Postgres for storage. Leo, can you write up the schema by Friday?
Leo: Sure. I'll also set up the staging deploy for the release next week.
""".strip()


@pytest.fixture
def text_item(sample_organization_id: str, sample_transcript: str) -> ContentItem:
    """A text source item: already has a transcript, no media."""
    return ContentItem(
        organization_id=sample_organization_id,
        source_type=SourceType.SLACK,
        title='Billing database discussion',
        transcript=sample_transcript,
    )


@pytest.fixture
def media_item(sample_organization_id: str) -> ContentItem:
    """A media item that still needs transcription."""
    return ContentItem(
        organization_id=sample_organization_id,
        source_type=SourceType.VIDEO,
        title='Weekly sync recording',
        media_ref='https://media.example.com/sync.mp4',
    )


@pytest.fixture
def services(fake_openai, repository, index, knowledge_repository):
    """In-memory Services for route tests; the orchestrator has no stages and is not started."""
    return Services(
        repository=repository,
        index=index,
        orchestrator=ProcessingOrchestrator(repository, index, [], knowledge_repository),
        search=SemanticSearchService(fake_openai, index, repository),
        knowledge=KnowledgeGraphBuilder(
            repository,
            index,
            knowledge_repository,
            TopicClusterer(),
            ConflictDetector(knowledge_repository, index, embedder=fake_openai.create_embeddings_batch),
        ),
        knowledge_repository=knowledge_repository,
    )
