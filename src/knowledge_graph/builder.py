"""
Knowledge graph builder.

Entry point for ListTopics, DetectConflicts and topic rebuilds. Runs on
demand or as a post-completion hook of the processing orchestrator.

Every failure in here is logged and swallowed: the knowledge graph degrades,
content processing is never affected.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from content_pipeline.embedding_index import EmbeddingIndex
from content_pipeline.logging import PipelineTimer, get_logger, logging_context
from content_pipeline.models.content_item import ContentItem, ProcessingStatus
from content_pipeline.models.embedding import OwnerType
from content_pipeline.repository import ContentItemRepository
from content_pipeline.similarity import centroid

from .clustering import ClusterCandidate, ClusteringResult, TopicClusterer
from .conflicts import ConflictDetector
from .models import DecisionConflict, Topic
from .repository import KnowledgeGraphRepository

logger = get_logger(__name__)


@dataclass
class ConflictReport:
    organization_id: str
    conflicts: list[DecisionConflict] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'organization_id': self.organization_id,
            'count': len(self.conflicts),
            'conflicts': [c.model_dump(mode='json') for c in self.conflicts],
            'error': self.error,
        }


class KnowledgeGraphBuilder:
    """
    Builds topics from content embeddings and reports decision conflicts.

    Usage:
        builder = KnowledgeGraphBuilder(items, index, graph, clusterer, detector)
        orchestrator.add_hook(builder.on_item_completed)
    """

    MAX_ITEMS = 500

    def __init__(
        self,
        content_repository: ContentItemRepository,
        index: EmbeddingIndex,
        repository: KnowledgeGraphRepository,
        clusterer: TopicClusterer,
        detector: ConflictDetector,
    ):
        self.content_repository = content_repository
        self.index = index
        self.repository = repository
        self.clusterer = clusterer
        self.detector = detector

    async def rebuild_topics(
        self, organization_id: str, now: datetime | None = None
    ) -> ClusteringResult:
        """Cluster the organization's completed items and upsert the resulting topics."""
        timer = PipelineTimer()
        with logging_context(organization_id=organization_id):
            try:
                with timer.stage('load'):
                    candidates = await self._candidates(organization_id)
                    existing = await self.repository.list_topics(organization_id)

                with timer.stage('cluster'):
                    result = await self.clusterer.build_topics(
                        organization_id, candidates, existing, now=now
                    )

                with timer.stage('persist'):
                    result.topics = [await self.repository.save_topic(t) for t in result.topics]
            except Exception as e:
                logger.error(
                    'knowledge_graph.clustering_failed',
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return ClusteringResult(organization_id=organization_id, error=str(e))

            logger.info('knowledge_graph.topics_rebuilt', **result.to_dict(), **timer.summary())
            return result

    async def list_topics(self, organization_id: str) -> list[Topic]:
        try:
            return await self.repository.list_topics(organization_id)
        except Exception as e:
            logger.error(
                'knowledge_graph.list_topics_failed',
                organization_id=organization_id,
                error=str(e),
            )
            return []

    async def detect_conflicts(self, organization_id: str) -> ConflictReport:
        with logging_context(organization_id=organization_id):
            try:
                conflicts = await self.detector.detect(organization_id)
            except Exception as e:
                logger.error(
                    'knowledge_graph.conflict_detection_failed',
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return ConflictReport(organization_id=organization_id, error=str(e))
            return ConflictReport(organization_id=organization_id, conflicts=conflicts)

    async def on_item_completed(self, item: ContentItem) -> None:
        """Post-completion hook: refresh the organization's topics."""
        result = await self.rebuild_topics(item.organization_id)
        if result.error is None:
            self.detector.invalidate(item.organization_id)

    async def _candidates(self, organization_id: str) -> list[ClusterCandidate]:
        """One vector per completed item: the centroid of its transcript chunks."""
        items = await self.content_repository.list_by_organization(
            organization_id, status=ProcessingStatus.COMPLETED, limit=self.MAX_ITEMS
        )
        if not items:
            return []

        stored = await self.index.vectors_for(OwnerType.TRANSCRIPT_CHUNK, [i.id for i in items])
        candidates = []
        for item in items:
            chunks = stored.get(item.id)
            if not chunks:
                continue
            candidates.append(
                ClusterCandidate(
                    content_item_id=item.id,
                    title=item.title,
                    tags=list(item.tags),
                    created_at=item.created_at,
                    vector=centroid([c.vector for c in chunks]),
                )
            )
        return candidates
