"""
Tests for the shared Postgres client.

Tests cover:
- URL handling (driver prefix, libpq-only query params)
- pgvector literal conversion in both directions
- Connection lifecycle against a mocked AsyncEngine
- Idempotent schema setup
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from content_pipeline.clients.postgres_client import (
    SCHEMA_STATEMENTS,
    PostgresClient,
    embedding_to_pgvector,
    normalize_driver,
    pgvector_to_embedding,
    sanitize_url,
    to_pg_ts,
)


@pytest.fixture
def mock_engine():
    """Mock AsyncEngine whose begin() yields a mock connection."""
    engine = AsyncMock()

    conn = AsyncMock()
    conn.execute = AsyncMock()

    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)

    engine.begin = MagicMock(return_value=ctx)
    engine.dispose = AsyncMock()

    return engine, conn


@pytest.fixture
def client(mock_engine):
    engine, _ = mock_engine
    pg = PostgresClient()
    pg._engine = engine
    return pg


class TestUrlHandling:
    def test_postgres_scheme_gets_asyncpg_driver(self):
        assert normalize_driver('postgres://u:p@host/db') == 'postgresql+asyncpg://u:p@host/db'
        assert normalize_driver('postgresql://u:p@host/db') == 'postgresql+asyncpg://u:p@host/db'

    def test_existing_driver_untouched(self):
        url = 'postgresql+asyncpg://u:p@host/db'
        assert normalize_driver(url) == url

    def test_strips_libpq_params(self):
        url = 'postgresql://u:p@host/db?sslmode=require&channel_binding=require&application_name=pipe'
        assert sanitize_url(url) == 'postgresql://u:p@host/db?application_name=pipe'

    def test_url_without_query(self):
        assert sanitize_url('postgresql://host/db') == 'postgresql://host/db'


class TestConversions:
    def test_embedding_to_pgvector(self):
        assert embedding_to_pgvector([0.5, 1.0, -2.0]) == '[0.5,1.0,-2.0]'
        assert embedding_to_pgvector(None) is None

    def test_pgvector_text_parsed(self):
        assert pgvector_to_embedding('[0.5,1,-2]') == (0.5, 1.0, -2.0)

    def test_pgvector_list_and_none(self):
        assert pgvector_to_embedding([1, 2]) == (1.0, 2.0)
        assert pgvector_to_embedding(None) == ()

    def test_to_pg_ts(self):
        stamp = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        assert to_pg_ts(stamp) is stamp
        assert to_pg_ts('2026-10-01T12:00:00+00:00') == stamp
        assert to_pg_ts(None) is None


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_requires_url(self):
        with pytest.raises(ValueError):
            await PostgresClient().connect()

    @pytest.mark.asyncio
    async def test_connect_builds_asyncpg_engine(self):
        with patch('content_pipeline.clients.postgres_client.create_async_engine') as create:
            pg = PostgresClient('postgres://u:p@host/db?sslmode=require')
            await pg.connect()
            await pg.connect()

        create.assert_called_once()
        args, kwargs = create.call_args
        assert args[0] == 'postgresql+asyncpg://u:p@host/db'
        assert kwargs['connect_args'] == {'prepared_statement_cache_size': 0, 'ssl': 'require'}

    @pytest.mark.asyncio
    async def test_ssl_optional(self):
        with patch('content_pipeline.clients.postgres_client.create_async_engine') as create:
            await PostgresClient('postgresql://localhost/db', require_ssl=False).connect()

        assert 'ssl' not in create.call_args.kwargs['connect_args']

    def test_engine_before_connect(self):
        with pytest.raises(RuntimeError):
            PostgresClient().engine

    @pytest.mark.asyncio
    async def test_close_disposes_engine(self, client, mock_engine):
        engine, _ = mock_engine
        await client.close()

        engine.dispose.assert_awaited_once()
        assert client._engine is None

    @pytest.mark.asyncio
    async def test_verify_connectivity(self, client, mock_engine):
        _, conn = mock_engine
        assert await client.verify_connectivity() is True

        conn.execute.side_effect = OSError('connection refused')
        assert await client.verify_connectivity() is False


class TestSchema:
    @pytest.mark.asyncio
    async def test_runs_every_statement(self, client, mock_engine):
        _, conn = mock_engine

        await client.setup_schema()

        assert conn.execute.await_count == len(SCHEMA_STATEMENTS)

    def test_statements_are_idempotent(self):
        assert all('IF NOT EXISTS' in statement for statement in SCHEMA_STATEMENTS)
