"""
Tests for the content item repository (in-memory implementation).

The compare-and-set ``transition`` is what guarantees a single in-flight run
per item, so it gets the most attention here.
"""

import asyncio
from datetime import timedelta

import pytest

from content_pipeline.errors import (
    ErrorKind,
    InvalidTransitionError,
    ItemNotFoundError,
    ValidationError,
)
from content_pipeline.models.action_item import ActionItem, ActionItemStatus
from content_pipeline.models.content_item import (
    ContentItem,
    PipelineStage,
    ProcessingStatus,
    SourceType,
    utcnow,
)
from content_pipeline.repository import InMemoryContentItemRepository


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_and_get(self, repository, text_item):
        await repository.create(text_item)

        fetched = await repository.get(text_item.id)
        assert fetched == text_item
        assert fetched is not text_item

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(ValidationError):
            await repository.create(text_item)

    @pytest.mark.asyncio
    async def test_require_missing(self, repository):
        assert await repository.get("missing") is None
        with pytest.raises(ItemNotFoundError):
            await repository.require("missing")

    @pytest.mark.asyncio
    async def test_list_by_organization_newest_first(self, repository, sample_organization_id):
        now = utcnow()
        for n in range(3):
            await repository.create(
                ContentItem(
                    organization_id=sample_organization_id,
                    source_type=SourceType.NOTION,
                    title=f"page {n}",
                    created_at=now + timedelta(minutes=n),
                )
            )
        await repository.create(
            ContentItem(organization_id="other_org", source_type=SourceType.NOTION)
        )

        items = await repository.list_by_organization(sample_organization_id)
        assert [i.title for i in items] == ["page 2", "page 1", "page 0"]

        limited = await repository.list_by_organization(sample_organization_id, limit=1)
        assert len(limited) == 1

        completed = await repository.list_by_organization(
            sample_organization_id, status=ProcessingStatus.COMPLETED
        )
        assert completed == []


class TestTransition:
    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, repository, text_item):
        await repository.create(text_item)

        first = await repository.transition(
            text_item.id, expected={ProcessingStatus.PENDING}, new_status=ProcessingStatus.ANALYZING
        )
        second = await repository.transition(
            text_item.id, expected={ProcessingStatus.PENDING}, new_status=ProcessingStatus.ANALYZING
        )

        assert first is not None
        assert first.processing_status == ProcessingStatus.ANALYZING
        assert second is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_only_one_wins(self, repository, text_item):
        await repository.create(text_item)

        results = await asyncio.gather(
            *(
                repository.transition(
                    text_item.id,
                    expected={ProcessingStatus.PENDING},
                    new_status=ProcessingStatus.ANALYZING,
                )
                for _ in range(10)
            )
        )
        assert sum(r is not None for r in results) == 1

    @pytest.mark.asyncio
    async def test_illegal_edge_raises(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(InvalidTransitionError):
            await repository.transition(
                text_item.id,
                expected={ProcessingStatus.PENDING},
                new_status=ProcessingStatus.COMPLETED,
            )

    @pytest.mark.asyncio
    async def test_writes_status_fields_together(self, repository, text_item):
        await repository.create(text_item)
        await repository.transition(
            text_item.id, expected={ProcessingStatus.PENDING}, new_status=ProcessingStatus.ANALYZING
        )

        failed = await repository.transition(
            text_item.id,
            expected={ProcessingStatus.ANALYZING},
            new_status=ProcessingStatus.FAILED,
            processing_error="timeout",
            error_kind=ErrorKind.TRANSIENT,
            failed_stage=PipelineStage.ANALYSIS,
            attempt=1,
        )

        assert failed.processing_error == "timeout"
        assert failed.failed_stage == PipelineStage.ANALYSIS
        assert failed.attempt == 1

    @pytest.mark.asyncio
    async def test_non_status_fields_rejected(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(ValidationError):
            await repository.transition(
                text_item.id,
                expected={ProcessingStatus.PENDING},
                new_status=ProcessingStatus.ANALYZING,
                summary="sneaky",
            )

    @pytest.mark.asyncio
    async def test_missing_item(self, repository):
        with pytest.raises(ItemNotFoundError):
            await repository.transition(
                "missing", expected={ProcessingStatus.PENDING}, new_status=ProcessingStatus.ANALYZING
            )


class TestApplyUpdate:
    @pytest.mark.asyncio
    async def test_status_fields_rejected(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(ValidationError):
            await repository.apply_update(text_item.id, {"processing_status": ProcessingStatus.COMPLETED})
        with pytest.raises(ValidationError):
            await repository.apply_update(text_item.id, {"organization_id": "other"})

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(ValidationError):
            await repository.apply_update(text_item.id, {"not_a_field": 1})

    @pytest.mark.asyncio
    async def test_action_items_merged_preserving_user_edits(self, repository, text_item):
        await repository.create(text_item)
        original = ActionItem(content_item_id=text_item.id, title="Write the schema", assignee="Leo")
        await repository.apply_update(text_item.id, {"action_items": [original]})
        await repository.update_action_item(
            text_item.id, original.id, status=ActionItemStatus.COMPLETED
        )

        reextracted = ActionItem(content_item_id=text_item.id, title="Write the schema", assignee="Maya")
        updated = await repository.apply_update(
            text_item.id, {"action_items": [reextracted], "summary": "New summary"}
        )

        assert updated.summary == "New summary"
        assert len(updated.action_items) == 1
        merged = updated.action_items[0]
        assert merged.id == original.id
        assert merged.status == ActionItemStatus.COMPLETED
        assert merged.assignee == "Maya"


class TestUpdateActionItem:
    @pytest.mark.asyncio
    async def test_records_edited_fields(self, repository, text_item):
        action_item = ActionItem(content_item_id=text_item.id, title="Send the deck")
        await repository.create(text_item.model_copy(update={"action_items": [action_item]}))

        edited = await repository.update_action_item(text_item.id, action_item.id, assignee="Sarah")

        assert edited.assignee == "Sarah"
        assert edited.user_edited_fields == {"assignee"}
        stored = await repository.require(text_item.id)
        assert stored.action_items[0].assignee == "Sarah"

    @pytest.mark.asyncio
    async def test_requires_a_field(self, repository, text_item):
        action_item = ActionItem(content_item_id=text_item.id, title="Send the deck")
        await repository.create(text_item.model_copy(update={"action_items": [action_item]}))

        with pytest.raises(ValidationError):
            await repository.update_action_item(text_item.id, action_item.id)

    @pytest.mark.asyncio
    async def test_unknown_action_item(self, repository, text_item):
        await repository.create(text_item)
        with pytest.raises(ItemNotFoundError):
            await repository.update_action_item(text_item.id, "nope", status=ActionItemStatus.CANCELLED)


class TestFindStale:
    @pytest.mark.asyncio
    async def test_only_old_in_flight_items(self, sample_organization_id):
        repository = InMemoryContentItemRepository()
        old = utcnow() - timedelta(hours=3)
        stuck = ContentItem(
            organization_id=sample_organization_id,
            source_type=SourceType.VIDEO,
            processing_status=ProcessingStatus.TRANSCRIBING,
            updated_at=old,
        )
        finished = ContentItem(
            organization_id=sample_organization_id,
            source_type=SourceType.VIDEO,
            processing_status=ProcessingStatus.COMPLETED,
            updated_at=old,
        )
        fresh = ContentItem(
            organization_id=sample_organization_id,
            source_type=SourceType.VIDEO,
            processing_status=ProcessingStatus.ANALYZING,
        )
        for item in (stuck, finished, fresh):
            await repository.create(item)

        stale = await repository.find_stale(utcnow() - timedelta(hours=1))
        assert [i.id for i in stale] == [stuck.id]
