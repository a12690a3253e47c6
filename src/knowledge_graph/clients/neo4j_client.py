"""
Neo4j client wrapper for the knowledge graph.

Handles:
- Connection management with async driver
- Schema setup (organization-scoped uniqueness for topics and decisions)
- Read and write query execution with retry
"""

import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase
from tenacity import retry, stop_after_attempt, wait_exponential

from content_pipeline.errors import wrap_neo4j_error

logger = structlog.get_logger(__name__)


class Neo4jClient:
    """
    Async Neo4j client.

    Configuration via environment variables:
    - NEO4J_URI: Database URI (e.g., neo4j+s://xxx.databases.neo4j.io)
    - NEO4J_USERNAME: Username (default: neo4j)
    - NEO4J_PASSWORD: Password
    - NEO4J_DATABASE: Database name (default: neo4j)
    """

    def __init__(
        self,
        uri: str | None = None,
        username: str | None = None,
        password: str | None = None,
        database: str | None = None,
    ):
        self.uri = uri or os.getenv('NEO4J_URI')
        self.username = username or os.getenv('NEO4J_USERNAME', 'neo4j')
        self.password = password or os.getenv('NEO4J_PASSWORD')
        self.database = database or os.getenv('NEO4J_DATABASE', 'neo4j')

        if not self.uri:
            raise ValueError('NEO4J_URI environment variable is required')
        if not self.password:
            raise ValueError('NEO4J_PASSWORD environment variable is required')

        self._driver: AsyncDriver | None = None

    async def connect(self) -> None:
        """Establish connection to Neo4j."""
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(
                self.uri,
                auth=(self.username, self.password),
            )
            try:
                await self._driver.verify_connectivity()
            except Exception as e:
                raise wrap_neo4j_error(e, {'uri': self.uri}) from e
            logger.info('neo4j_client.connected', database=self.database)

    async def close(self) -> None:
        """Close the database connection."""
        if self._driver:
            await self._driver.close()
            self._driver = None

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        if self._driver is None:
            await self.connect()
        async with self._driver.session(database=self.database) as session:
            yield session

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def execute_query(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a read query and return result records as dicts.
        """
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            return await result.data()

    async def execute_write(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a write query within a transaction.
        """
        async with self.session() as session:

            async def _write_tx(tx):
                result = await tx.run(query, parameters or {})
                return await result.data()

            return await session.execute_write(_write_tx)

    async def health_check(self) -> dict[str, bool | str]:
        try:
            if self._driver is None:
                await self.connect()
            await self._driver.verify_connectivity()
            await self.execute_query('RETURN 1 as test')
            return {'healthy': True, 'uri': self.uri, 'database': self.database}
        except Exception as e:
            return {'healthy': False, 'error': str(e)}

    async def setup_schema(self) -> dict[str, list[str]]:
        """
        Create constraints and indexes.

        Topics are unique on (organization_id, normalized_name); decisions and
        content item nodes are keyed on (organization_id, id).

        Returns:
            Dict with lists of created constraints and indexes
        """
        created: dict[str, list[str]] = {'constraints': [], 'indexes': []}

        constraints = [
            ('topic_org_name_key', 'Topic', '(n.organization_id, n.normalized_name)', 'IS UNIQUE'),
            ('topic_org_id_key', 'Topic', '(n.organization_id, n.id)', 'IS NODE KEY'),
            ('decision_org_id_key', 'Decision', '(n.organization_id, n.id)', 'IS NODE KEY'),
            ('content_item_org_id_key', 'ContentItem', '(n.organization_id, n.id)', 'IS NODE KEY'),
        ]
        for name, label, props, kind in constraints:
            try:
                await self.execute_write(
                    f'CREATE CONSTRAINT {name} IF NOT EXISTS FOR (n:{label}) REQUIRE {props} {kind}'
                )
                created['constraints'].append(name)
            except Exception as e:
                if 'already exists' not in str(e).lower():
                    raise

        indexes = [
            ('decision_content_item_idx', 'Decision', 'content_item_id'),
            ('decision_status_idx', 'Decision', 'status'),
            ('topic_org_idx', 'Topic', 'organization_id'),
        ]
        for name, label, prop in indexes:
            try:
                await self.execute_write(
                    f'CREATE INDEX {name} IF NOT EXISTS FOR (n:{label}) ON (n.{prop})'
                )
                created['indexes'].append(name)
            except Exception as e:
                if 'already exists' not in str(e).lower():
                    raise

        logger.info('neo4j_client.schema_ready', **{k: len(v) for k, v in created.items()})
        return created
