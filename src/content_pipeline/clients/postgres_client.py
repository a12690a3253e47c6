"""
Postgres client for the content processing pipeline.

Owns the SQLAlchemy 2.0 async engine (asyncpg driver) shared by the content
item repository and the pgvector embedding index. Statements are plain
``text()`` SQL; there is no ORM layer.

Tables:
- content_items (one row per item, stage outputs in JSONB columns)
- embeddings (pgvector, one row per vector, replaced per owner as a set)
"""

from __future__ import annotations

from datetime import datetime
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = structlog.get_logger(__name__)


def to_pg_ts(val: datetime | str | None) -> datetime | None:
    """Ensure value is a datetime for asyncpg (which needs native types, not strings)."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)


def sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand.

    Pooler URLs often include ``channel_binding=require`` and ``sslmode=require``
    which are libpq parameters. asyncpg rejects unknown connection params.
    """
    strip_params = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in strip_params}
    return urlunparse(parsed._replace(query=urlencode(filtered, doseq=True)))


def normalize_driver(url: str) -> str:
    """Force the asyncpg driver prefix."""
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql://') and '+asyncpg' not in url:
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return url


def embedding_to_pgvector(embedding: list[float] | tuple[float, ...] | None) -> str | None:
    """Convert an embedding to a pgvector literal string, e.g. '[0.1,0.2,...]'."""
    if embedding is None:
        return None
    return '[' + ','.join(str(f) for f in embedding) + ']'


def pgvector_to_embedding(value: str | list[float] | None) -> tuple[float, ...]:
    """Parse a pgvector column returned as text back into floats."""
    if value is None:
        return ()
    if isinstance(value, str):
        inner = value.strip().lstrip('[').rstrip(']')
        return tuple(float(v) for v in inner.split(',') if v)
    return tuple(float(v) for v in value)


# Idempotent DDL, applied by setup_schema()
SCHEMA_STATEMENTS: tuple[str, ...] = (
    'CREATE EXTENSION IF NOT EXISTS vector',
    """
    CREATE TABLE IF NOT EXISTS content_items (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        source_type TEXT NOT NULL,
        external_id TEXT,
        title TEXT NOT NULL DEFAULT '',
        raw_payload_ref TEXT,
        media_ref TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        transcript TEXT,
        transcript_segments JSONB,
        duration_seconds DOUBLE PRECISION,
        speakers JSONB NOT NULL DEFAULT '[]'::jsonb,
        summary TEXT,
        tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        action_items JSONB NOT NULL DEFAULT '[]'::jsonb,
        chapters JSONB NOT NULL DEFAULT '[]'::jsonb,
        processing_status TEXT NOT NULL DEFAULT 'pending',
        processing_error TEXT,
        error_kind TEXT,
        failed_stage TEXT,
        attempt INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    'CREATE INDEX IF NOT EXISTS content_items_org_idx ON content_items (organization_id, created_at DESC)',
    'CREATE INDEX IF NOT EXISTS content_items_status_idx ON content_items (processing_status, updated_at)',
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        owner_type TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        organization_id TEXT NOT NULL,
        content_item_id TEXT,
        source_type TEXT,
        source_text TEXT NOT NULL,
        tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        timestamp_start DOUBLE PRECISION,
        timestamp_end DOUBLE PRECISION,
        embedding vector NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (owner_type, owner_id, chunk_index)
    )
    """,
    'CREATE INDEX IF NOT EXISTS embeddings_org_idx ON embeddings (organization_id, owner_type)',
)


class PostgresClient:
    """
    Async Postgres client shared by the Postgres-backed stores.

    Uses SQLAlchemy 2.0 async engine with asyncpg for raw SQL execution.
    """

    def __init__(self, database_url: str | None = None, require_ssl: bool = True):
        """
        Args:
            database_url: Postgres connection URL. 'postgres://' and
                          'postgresql://' URLs are converted to use asyncpg.
            require_ssl: Pass ssl='require' to asyncpg (hosted databases)
        """
        self._engine: AsyncEngine | None = None
        self._database_url = database_url
        self._require_ssl = require_ssl

    async def connect(self, database_url: str | None = None) -> None:
        """Create the async engine. Idempotent, no-op if already connected."""
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        url = normalize_driver(sanitize_url(url))

        connect_args: dict[str, object] = {'prepared_statement_cache_size': 0}
        if self._require_ssl:
            connect_args['ssl'] = 'require'

        self._engine = create_async_engine(
            url,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            pool_timeout=30,
            connect_args=connect_args,
        )
        logger.info('postgres_client.connected')

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('postgres_client.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('PostgresClient not connected, call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except Exception:
            logger.exception('postgres_client.connectivity_check_failed')
            return False

    async def setup_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self.engine.begin() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(text(statement))
        logger.info('postgres_client.schema_ready', statements=len(SCHEMA_STATEMENTS))
