"""
Knowledge graph storage.

Provides:
- KnowledgeGraphRepository: interface used by the builder and the orchestrator
- InMemoryKnowledgeGraphRepository: dict store for tests and local runs
- Neo4jKnowledgeGraphRepository: Cypher over the async Neo4j driver

Topics are keyed on (organization_id, normalized_name); saving a topic whose
normalized name already exists updates that topic instead of creating a
duplicate. Decisions are replaced per content item as a set.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone

import structlog

from .clients.neo4j_client import Neo4jClient
from .models import Decision, DecisionStatus, Topic, TopicTrend

logger = structlog.get_logger(__name__)


class KnowledgeGraphRepository(ABC):
    """Persistence interface for topics and decisions."""

    # -------------------------------------------------------------------------
    # Topics
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_topics(self, organization_id: str) -> list[Topic]:
        """Topics of an organization, largest first."""

    @abstractmethod
    async def save_topic(self, topic: Topic) -> Topic:
        """
        Insert or update a topic keyed on (organization_id, normalized_name).

        Returns the stored topic; its id is the existing one when the
        normalized name was already taken.
        """

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def replace_decisions(
        self,
        organization_id: str,
        content_item_id: str,
        decisions: list[Decision],
    ) -> list[str]:
        """
        Replace every decision extracted from a content item.

        Returns the ids of the decisions that were removed.
        """

    @abstractmethod
    async def list_decisions(
        self,
        organization_id: str,
        statuses: Iterable[DecisionStatus] | None = None,
        limit: int = 50,
    ) -> list[Decision]:
        """Most recent decisions first (by effective date, then id)."""

    @abstractmethod
    async def get_decision(self, decision_id: str) -> Decision | None:
        """Fetch one decision."""


def _recent_first(decisions: Iterable[Decision]) -> list[Decision]:
    return sorted(decisions, key=lambda d: (d.effective_at, d.id), reverse=True)


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryKnowledgeGraphRepository(KnowledgeGraphRepository):
    def __init__(self):
        self._topics: dict[tuple[str, str], Topic] = {}
        self._decisions: dict[str, Decision] = {}
        self._lock = asyncio.Lock()

    async def list_topics(self, organization_id: str) -> list[Topic]:
        topics = [t for (org, _), t in self._topics.items() if org == organization_id]
        topics.sort(key=lambda t: (-t.content_count, t.normalized_name))
        return [t.model_copy(deep=True) for t in topics]

    async def save_topic(self, topic: Topic) -> Topic:
        key = (topic.organization_id, topic.normalized_name)
        async with self._lock:
            existing = self._topics.get(key)
            if existing is not None and existing.id != topic.id:
                topic = topic.model_copy(
                    update={'id': existing.id, 'created_at': existing.created_at}
                )
            # A renamed topic releases its previous normalized name
            for other_key, other in list(self._topics.items()):
                if other.id == topic.id and other_key != key:
                    del self._topics[other_key]
            stored = topic.model_copy(update={'updated_at': datetime.now(tz=timezone.utc)}, deep=True)
            self._topics[key] = stored
            return stored.model_copy(deep=True)

    async def replace_decisions(
        self,
        organization_id: str,
        content_item_id: str,
        decisions: list[Decision],
    ) -> list[str]:
        async with self._lock:
            removed = [
                d.id
                for d in self._decisions.values()
                if d.organization_id == organization_id and d.content_item_id == content_item_id
            ]
            for decision_id in removed:
                del self._decisions[decision_id]
            for decision in decisions:
                self._decisions[decision.id] = decision.model_copy(deep=True)
        new_ids = {d.id for d in decisions}
        return [d for d in removed if d not in new_ids]

    async def list_decisions(
        self,
        organization_id: str,
        statuses: Iterable[DecisionStatus] | None = None,
        limit: int = 50,
    ) -> list[Decision]:
        allowed = set(statuses) if statuses is not None else None
        decisions = [
            d
            for d in self._decisions.values()
            if d.organization_id == organization_id and (allowed is None or d.status in allowed)
        ]
        return [d.model_copy(deep=True) for d in _recent_first(decisions)[:limit]]

    async def get_decision(self, decision_id: str) -> Decision | None:
        decision = self._decisions.get(decision_id)
        return decision.model_copy(deep=True) if decision else None


# =============================================================================
# Neo4j implementation
# =============================================================================


def _node_to_topic(node: dict, content_item_ids: list[str]) -> Topic:
    return Topic(
        id=node['id'],
        organization_id=node['organization_id'],
        name=node['name'],
        normalized_name=node['normalized_name'],
        description=node.get('description', ''),
        keywords=list(node.get('keywords') or []),
        content_item_ids=sorted(content_item_ids),
        content_count=node.get('content_count', len(content_item_ids)),
        centroid=node.get('centroid'),
        trend=TopicTrend(node.get('trend', TopicTrend.STABLE.value)),
        trend_score=node.get('trend_score', 0.0),
        created_at=node['created_at'],
        updated_at=node['updated_at'],
    )


def _node_to_decision(node: dict) -> Decision:
    return Decision(
        id=node['id'],
        organization_id=node['organization_id'],
        content_item_id=node.get('content_item_id'),
        summary=node['summary'],
        context=node.get('context', ''),
        reasoning=node.get('reasoning', ''),
        status=DecisionStatus(node['status']),
        decided_at=node.get('decided_at'),
        tags=list(node.get('tags') or []),
        created_at=node['created_at'],
        updated_at=node['updated_at'],
    )


class Neo4jKnowledgeGraphRepository(KnowledgeGraphRepository):
    """
    Graph layout:
        (:Topic)-[:INCLUDES]->(:ContentItem)
        (:ContentItem)-[:HAS_DECISION]->(:Decision)
    """

    def __init__(self, neo4j_client: Neo4jClient):
        self.neo4j = neo4j_client

    async def list_topics(self, organization_id: str) -> list[Topic]:
        query = """
            MATCH (t:Topic {organization_id: $organization_id})
            OPTIONAL MATCH (t)-[:INCLUDES]->(c:ContentItem)
            RETURN t {.*} AS topic, collect(c.id) AS content_item_ids
            ORDER BY t.content_count DESC, t.normalized_name
        """
        rows = await self.neo4j.execute_query(query, {'organization_id': organization_id})
        return [_node_to_topic(r['topic'], r['content_item_ids']) for r in rows]

    async def save_topic(self, topic: Topic) -> Topic:
        props = topic.to_neo4j_properties()
        props['updated_at'] = datetime.now(tz=timezone.utc).isoformat()
        query = """
            MERGE (t:Topic {organization_id: $organization_id, normalized_name: $normalized_name})
            ON CREATE SET t.id = $props.id, t.created_at = $props.created_at
            SET t.name = $props.name,
                t.description = $props.description,
                t.keywords = $props.keywords,
                t.content_count = $props.content_count,
                t.centroid = $props.centroid,
                t.trend = $props.trend,
                t.trend_score = $props.trend_score,
                t.updated_at = $props.updated_at
            WITH t
            OPTIONAL MATCH (t)-[old:INCLUDES]->(:ContentItem)
            DELETE old
            WITH DISTINCT t
            UNWIND $content_item_ids AS content_item_id
            MERGE (c:ContentItem {organization_id: $organization_id, id: content_item_id})
            MERGE (t)-[:INCLUDES]->(c)
            RETURN t {.*} AS topic
        """
        await self.neo4j.execute_write(
            query,
            {
                'organization_id': topic.organization_id,
                'normalized_name': topic.normalized_name,
                'props': props,
                'content_item_ids': topic.content_item_ids,
            },
        )
        # Re-read: the UNWIND returns no rows for a topic without members
        rows = await self.neo4j.execute_query(
            """
            MATCH (t:Topic {organization_id: $organization_id, normalized_name: $normalized_name})
            OPTIONAL MATCH (t)-[:INCLUDES]->(c:ContentItem)
            RETURN t {.*} AS topic, collect(c.id) AS content_item_ids
            """,
            {'organization_id': topic.organization_id, 'normalized_name': topic.normalized_name},
        )
        return _node_to_topic(rows[0]['topic'], rows[0]['content_item_ids'])

    async def replace_decisions(
        self,
        organization_id: str,
        content_item_id: str,
        decisions: list[Decision],
    ) -> list[str]:
        new_ids = [d.id for d in decisions]
        delete_query = """
            MATCH (d:Decision {organization_id: $organization_id, content_item_id: $content_item_id})
            WHERE NOT d.id IN $keep_ids
            WITH d, d.id AS removed_id
            DETACH DELETE d
            RETURN removed_id
        """
        rows = await self.neo4j.execute_write(
            delete_query,
            {
                'organization_id': organization_id,
                'content_item_id': content_item_id,
                'keep_ids': new_ids,
            },
        )
        if decisions:
            await self.neo4j.execute_write(
                """
                MERGE (c:ContentItem {organization_id: $organization_id, id: $content_item_id})
                WITH c
                UNWIND $decisions AS props
                MERGE (d:Decision {organization_id: $organization_id, id: props.id})
                SET d += props
                MERGE (c)-[:HAS_DECISION]->(d)
                """,
                {
                    'organization_id': organization_id,
                    'content_item_id': content_item_id,
                    'decisions': [d.to_neo4j_properties() for d in decisions],
                },
            )
        removed = [r['removed_id'] for r in rows]
        logger.debug(
            'knowledge_graph_repository.decisions_replaced',
            content_item_id=content_item_id,
            written=len(decisions),
            removed=len(removed),
        )
        return removed

    async def list_decisions(
        self,
        organization_id: str,
        statuses: Iterable[DecisionStatus] | None = None,
        limit: int = 50,
    ) -> list[Decision]:
        query = """
            MATCH (d:Decision {organization_id: $organization_id})
            WHERE $statuses IS NULL OR d.status IN $statuses
            RETURN d {.*} AS decision
            ORDER BY coalesce(d.decided_at, d.created_at) DESC, d.id DESC
            LIMIT $limit
        """
        rows = await self.neo4j.execute_query(
            query,
            {
                'organization_id': organization_id,
                'statuses': [s.value for s in statuses] if statuses is not None else None,
                'limit': limit,
            },
        )
        return [_node_to_decision(r['decision']) for r in rows]

    async def get_decision(self, decision_id: str) -> Decision | None:
        rows = await self.neo4j.execute_query(
            'MATCH (d:Decision {id: $id}) RETURN d {.*} AS decision', {'id': decision_id}
        )
        return _node_to_decision(rows[0]['decision']) if rows else None
