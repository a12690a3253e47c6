"""
Topic clustering.

Groups an organization's content items by embedding similarity and turns
the groups into Topics:

1. Greedy seed clustering: walk items in a fixed order; an unclustered item
   becomes a seed when at least ``min_cluster_size - 1`` other unclustered
   items are within ``similarity_threshold`` of it. Stop at ``max_clusters``.
2. Keywords: tags shared by at least half of the members.
3. Match each cluster to an existing topic by keyword overlap, then by
   normalized name; unmatched clusters become new topics.
4. Naming (optional, AI): never blocks persistence, falls back to a
   keyword-derived name.
5. Trend: member creation dates over two 14-day windows.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from content_pipeline.clients.openai_client import OpenAIClient
from content_pipeline.logging import get_logger
from content_pipeline.similarity import centroid, similarity_matrix

from .errors import ClusteringError, TopicNamingError
from .models import Topic, TopicTrend
from .prompts.topic_prompts import TopicName, build_topic_name_prompt

logger = get_logger(__name__)

TREND_WINDOW = timedelta(days=14)
TREND_THRESHOLD = 0.2
KEYWORD_MATCH_THRESHOLD = 0.5

_TITLE_STOPWORDS = frozenset(
    'a an and are at by for from in into is it of on or our the to we with re fwd meeting sync call notes'.split()
)


@dataclass
class ClusterCandidate:
    """One content item as seen by the clusterer."""

    content_item_id: str
    title: str
    tags: list[str]
    created_at: datetime
    vector: list[float]


@dataclass
class Cluster:
    members: list[ClusterCandidate]
    keywords: list[str]
    centroid: list[float]

    @property
    def member_ids(self) -> list[str]:
        return [m.content_item_id for m in self.members]


@dataclass
class ClusteringResult:
    """Outcome of one clustering run for an organization."""

    organization_id: str
    topics: list[Topic] = field(default_factory=list)
    created_topic_ids: list[str] = field(default_factory=list)
    updated_topic_ids: list[str] = field(default_factory=list)
    unclustered_item_ids: list[str] = field(default_factory=list)
    naming_failures: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'organization_id': self.organization_id,
            'topics': len(self.topics),
            'created_topic_ids': self.created_topic_ids,
            'updated_topic_ids': self.updated_topic_ids,
            'unclustered_items': len(self.unclustered_item_ids),
            'naming_failures': self.naming_failures,
            'error': self.error,
        }


def common_tags(members: list[ClusterCandidate]) -> list[str]:
    """Tags carried by at least ceil(n/2) members, most frequent first."""
    counts = Counter(tag for m in members for tag in dict.fromkeys(m.tags))
    needed = math.ceil(len(members) / 2)
    return [tag for tag, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])) if count >= needed]


def title_keywords(members: list[ClusterCandidate], limit: int = 3) -> list[str]:
    """Most frequent non-trivial title words, used when members share no tags."""
    counts: Counter[str] = Counter()
    for m in members:
        words = {w.strip('.,:;!?()[]"\'').lower() for w in m.title.split()}
        counts.update(w for w in words if len(w) > 2 and w not in _TITLE_STOPWORDS)
    return [w for w, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]


def keyword_name(keywords: list[str], fallback: str) -> str:
    if not keywords:
        return fallback
    return ' '.join(k.title() for k in keywords[:3])[:100]


def keyword_overlap(a: list[str], b: list[str]) -> float:
    """Jaccard similarity of two keyword lists."""
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def compute_trend(created: list[datetime], now: datetime) -> tuple[TopicTrend, float]:
    """
    Compare member counts of the last 14 days against the 14 days before.

    Score is (recent - previous) / (recent + previous), in [-1, 1].
    """
    recent = sum(1 for c in created if now - TREND_WINDOW <= c <= now)
    previous = sum(1 for c in created if now - 2 * TREND_WINDOW <= c < now - TREND_WINDOW)
    if recent + previous == 0:
        return TopicTrend.STABLE, 0.0
    score = round((recent - previous) / (recent + previous), 4)
    if score >= TREND_THRESHOLD:
        return TopicTrend.RISING, score
    if score <= -TREND_THRESHOLD:
        return TopicTrend.DECLINING, score
    return TopicTrend.STABLE, score


def cluster_candidates(
    candidates: list[ClusterCandidate],
    similarity_threshold: float = 0.7,
    min_cluster_size: int = 3,
    max_clusters: int = 20,
) -> tuple[list[Cluster], list[str]]:
    """
    Greedy seed clustering.

    Candidates are visited ordered by (created_at, id) so the same input
    always yields the same clusters.

    Returns:
        (clusters, ids of unclustered items)
    """
    ordered = sorted(candidates, key=lambda c: (c.created_at, c.content_item_id))
    if len(ordered) < min_cluster_size:
        return [], [c.content_item_id for c in ordered]

    dims = {len(c.vector) for c in ordered}
    if len(dims) > 1:
        raise ClusteringError(
            'Content vectors have mixed dimensions', context={'dimensions': sorted(dims)}
        )

    sims = similarity_matrix([c.vector for c in ordered])
    clustered: set[int] = set()
    clusters: list[Cluster] = []

    for i in range(len(ordered)):
        if len(clusters) >= max_clusters:
            break
        if i in clustered:
            continue
        similar = [
            j
            for j in range(len(ordered))
            if j != i and j not in clustered and sims[i, j] >= similarity_threshold
        ]
        if len(similar) < min_cluster_size - 1:
            continue

        members = [ordered[i]] + [ordered[j] for j in similar]
        clustered.update([i, *similar])
        keywords = common_tags(members) or title_keywords(members)
        clusters.append(
            Cluster(
                members=members,
                keywords=keywords,
                centroid=centroid([m.vector for m in members]),
            )
        )

    unclustered = [c.content_item_id for n, c in enumerate(ordered) if n not in clustered]
    return clusters, unclustered


class TopicClusterer:
    """
    Clusters candidates and reconciles the clusters with existing topics.

    Usage:
        clusterer = TopicClusterer(openai_client)
        result = await clusterer.build_topics(org_id, candidates, existing_topics)
    """

    MAX_ITEMS = 500

    def __init__(
        self,
        openai: OpenAIClient | None = None,
        similarity_threshold: float = 0.7,
        min_cluster_size: int = 3,
        max_clusters: int = 20,
        use_ai_naming: bool = True,
    ):
        if min_cluster_size < 2:
            raise ValueError('min_cluster_size must be at least 2')
        self.openai = openai
        self.similarity_threshold = similarity_threshold
        self.min_cluster_size = min_cluster_size
        self.max_clusters = max_clusters
        self.use_ai_naming = use_ai_naming and openai is not None

    async def build_topics(
        self,
        organization_id: str,
        candidates: list[ClusterCandidate],
        existing: list[Topic],
        now: datetime | None = None,
    ) -> ClusteringResult:
        """
        Produce the topics to persist for this run.

        Existing topics that no cluster matches are not returned (and so are
        left as they are).
        """
        now = now or datetime.now(tz=timezone.utc)
        result = ClusteringResult(organization_id=organization_id)

        # Most recent MAX_ITEMS items only
        recent = sorted(candidates, key=lambda c: (c.created_at, c.content_item_id), reverse=True)
        clusters, unclustered = cluster_candidates(
            recent[: self.MAX_ITEMS],
            similarity_threshold=self.similarity_threshold,
            min_cluster_size=self.min_cluster_size,
            max_clusters=self.max_clusters,
        )
        result.unclustered_item_ids = unclustered

        by_id: dict[str, Topic] = {t.id: t for t in existing}
        touched: dict[str, Topic] = {}

        for number, cluster in enumerate(clusters, start=1):
            match = self._match_by_keywords(cluster, list(touched.values()) + existing)
            description = ''
            if match is None:
                name, description = await self._name_cluster(cluster, number, result)
                match = self._match_by_name(name, list(touched.values()) + existing)
            else:
                name = match.name

            trend, trend_score = compute_trend([m.created_at for m in cluster.members], now)

            if match is not None:
                # Two clusters landing on one topic in the same run are merged
                base = touched.get(match.id, match)
                member_ids = sorted(set(base.content_item_ids if match.id in touched else []) | set(cluster.member_ids))
                topic = base.model_copy(
                    update={
                        'keywords': cluster.keywords or base.keywords,
                        'content_item_ids': member_ids,
                        'content_count': len(member_ids),
                        'centroid': cluster.centroid,
                        'trend': trend,
                        'trend_score': trend_score,
                        'description': base.description or description,
                        'updated_at': now,
                    }
                )
                if match.id in by_id and match.id not in result.updated_topic_ids:
                    result.updated_topic_ids.append(match.id)
            else:
                topic = Topic.create(
                    organization_id,
                    name,
                    description=description,
                    keywords=cluster.keywords,
                    content_item_ids=sorted(cluster.member_ids),
                    content_count=len(cluster.members),
                    centroid=cluster.centroid,
                    trend=trend,
                    trend_score=trend_score,
                )
                result.created_topic_ids.append(topic.id)
            touched[topic.id] = topic

        result.topics = list(touched.values())
        logger.info(
            'knowledge_graph.clustering_completed',
            organization_id=organization_id,
            candidates=len(candidates),
            clusters=len(clusters),
            created=len(result.created_topic_ids),
            updated=len(result.updated_topic_ids),
            unclustered=len(unclustered),
        )
        return result

    def _match_by_keywords(self, cluster: Cluster, topics: list[Topic]) -> Topic | None:
        best: Topic | None = None
        best_score = 0.0
        for topic in sorted(topics, key=lambda t: t.normalized_name):
            score = keyword_overlap(cluster.keywords, topic.keywords)
            if score >= KEYWORD_MATCH_THRESHOLD and score > best_score:
                best, best_score = topic, score
        return best

    @staticmethod
    def _match_by_name(name: str, topics: list[Topic]) -> Topic | None:
        normalized = Topic.normalize_name(name)
        return next((t for t in topics if t.normalized_name == normalized), None)

    async def _name_cluster(
        self, cluster: Cluster, number: int, result: ClusteringResult
    ) -> tuple[str, str]:
        fallback = keyword_name(cluster.keywords, f"Topic {number}")
        if not self.use_ai_naming:
            return fallback, ''
        try:
            named = await self._ai_name(cluster)
        except TopicNamingError as e:
            result.naming_failures += 1
            logger.warning('knowledge_graph.topic_naming_failed', error=str(e), fallback=fallback)
            return fallback, ''
        return named.name.strip()[:100] or fallback, named.description

    async def _ai_name(self, cluster: Cluster) -> TopicName:
        messages = build_topic_name_prompt([m.title for m in cluster.members], cluster.keywords)
        try:
            return await self.openai.chat_completion_structured(
                messages=messages,
                response_model=TopicName,
            )
        except Exception as e:
            raise TopicNamingError(
                f"Topic naming failed: {e}", context={'members': len(cluster.members)}
            ) from e
