"""
Tests for semantic search and related-item lookups.

Embeddings come from the keyword-axis fake in conftest: database talk,
hiring talk and release talk each land on their own axis.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from content_pipeline.errors import ItemNotFoundError, ValidationError
from content_pipeline.models.content_item import ContentItem, SourceType
from content_pipeline.models.embedding import Embedding, OwnerType
from content_pipeline.search import SearchFilters, SemanticSearchService, make_snippet


async def _store_item(openai, repository, index, organization_id, title, chunks, source_type=SourceType.SLACK):
    item = await repository.create(
        ContentItem(organization_id=organization_id, source_type=source_type, title=title)
    )
    vectors = await openai.create_embeddings_batch(chunks)
    await index.upsert(
        OwnerType.TRANSCRIPT_CHUNK,
        item.id,
        [
            Embedding(
                owner_type=OwnerType.TRANSCRIPT_CHUNK,
                owner_id=item.id,
                organization_id=organization_id,
                vector=tuple(vectors[n]),
                source_text=text,
                chunk_index=n,
                content_item_id=item.id,
                source_type=source_type.value,
            )
            for n, text in enumerate(chunks)
        ],
    )
    return item


class TestFilters:
    def test_defaults(self):
        filters = SearchFilters(organization_id="org")
        assert filters.threshold == 0.7
        assert filters.limit == 10

    def test_bounds(self):
        with pytest.raises(PydanticValidationError):
            SearchFilters(organization_id="org", threshold=1.2)
        with pytest.raises(PydanticValidationError):
            SearchFilters(organization_id="org", limit=0)


class TestSnippet:
    def test_short_text_unchanged(self):
        assert make_snippet("  hello\n world ") == "hello world"

    def test_long_text_cut_on_word(self):
        snippet = make_snippet("word " * 100, limit=22)
        assert snippet == "word word word word..."


class TestSearch:
    @pytest.mark.asyncio
    async def test_ranked_hits_with_titles(self, fake_openai, repository, index, sample_organization_id):
        db = await _store_item(
            fake_openai, repository, index, sample_organization_id, "Storage decision",
            ["We picked Postgres as the database."],
        )
        await _store_item(
            fake_openai, repository, index, sample_organization_id, "Hiring sync",
            ["Two candidates passed the interview."],
        )
        service = SemanticSearchService(fake_openai, index, repository)

        response = await service.search(
            "which database do we use?", SearchFilters(organization_id=sample_organization_id)
        )

        assert [h.content_item_id for h in response.hits] == [db.id]
        hit = response.hits[0]
        assert hit.title == "Storage decision"
        assert hit.similarity >= 0.7
        assert response.to_dict()["count"] == 1

    @pytest.mark.asyncio
    async def test_other_organizations_never_returned(
        self, fake_openai, repository, index, sample_organization_id
    ):
        await _store_item(
            fake_openai, repository, index, "other_org", "Their storage", ["Postgres database"])
        service = SemanticSearchService(fake_openai, index, repository)

        response = await service.search(
            "database", SearchFilters(organization_id=sample_organization_id, threshold=0.0)
        )
        assert response.hits == []

    @pytest.mark.asyncio
    async def test_content_type_filter(self, fake_openai, repository, index, sample_organization_id):
        await _store_item(
            fake_openai, repository, index, sample_organization_id, "Slack", ["database talk"])
        notion = await _store_item(
            fake_openai, repository, index, sample_organization_id, "Notion", ["database page"], SourceType.NOTION
        )
        service = SemanticSearchService(fake_openai, index, repository)

        response = await service.search(
            "database",
            SearchFilters(organization_id=sample_organization_id, content_types=["notion"]),
        )
        assert [h.content_item_id for h in response.hits] == [notion.id]

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, fake_openai, repository, index):
        service = SemanticSearchService(fake_openai, index, repository)
        with pytest.raises(ValidationError):
            await service.search("   ", SearchFilters(organization_id="org"))
        fake_openai.create_embedding.assert_not_awaited()


class TestFindSimilarItems:
    @pytest.mark.asyncio
    async def test_related_items_exclude_self(self, fake_openai, repository, index, sample_organization_id):
        source = await _store_item(
            fake_openai, repository, index, sample_organization_id, "DB call",
            ["Postgres database tuning", "storage costs"],
        )
        related = await _store_item(
            fake_openai, repository, index, sample_organization_id, "DB follow-up",
            ["database migration plan", "more storage notes", "mongodb comparison"],
        )
        await _store_item(
            fake_openai, repository, index, sample_organization_id, "Hiring", ["interview loop"])
        service = SemanticSearchService(fake_openai, index, repository)

        similar = await service.find_similar_items(source.id)

        assert [s.content_item_id for s in similar] == [related.id]
        assert similar[0].title == "DB follow-up"

    @pytest.mark.asyncio
    async def test_long_item_still_finds_related(self, fake_openai, repository, index, sample_organization_id):
        long_item = await repository.create(
            ContentItem(organization_id=sample_organization_id, source_type=SourceType.VIDEO, title="All hands")
        )
        short_item = await repository.create(
            ContentItem(organization_id=sample_organization_id, source_type=SourceType.SLACK, title="Recap")
        )
        for item, vectors in ((long_item, [(1.0, 0.0)] * 60), (short_item, [(1.0, 0.3)])):
            await index.upsert(
                OwnerType.TRANSCRIPT_CHUNK,
                item.id,
                [
                    Embedding(
                        owner_type=OwnerType.TRANSCRIPT_CHUNK,
                        owner_id=item.id,
                        organization_id=sample_organization_id,
                        vector=vector,
                        source_text=f"chunk {n}",
                        chunk_index=n,
                        content_item_id=item.id,
                    )
                    for n, vector in enumerate(vectors)
                ],
            )
        service = SemanticSearchService(fake_openai, index, repository)

        similar = await service.find_similar_items(long_item.id, limit=5)

        assert [s.content_item_id for s in similar] == [short_item.id]

    @pytest.mark.asyncio
    async def test_item_without_embeddings(self, fake_openai, repository, index, text_item):
        await repository.create(text_item)
        service = SemanticSearchService(fake_openai, index, repository)

        assert await service.find_similar_items(text_item.id) == []

    @pytest.mark.asyncio
    async def test_unknown_item(self, fake_openai, repository, index):
        service = SemanticSearchService(fake_openai, index, repository)
        with pytest.raises(ItemNotFoundError):
            await service.find_similar_items("missing")
