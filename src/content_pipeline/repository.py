"""
Content item store.

Provides:
- ContentItemRepository: the storage interface the orchestrator and API use
- InMemoryContentItemRepository: asyncio-locked dict store (tests, local runs)
- PostgresContentItemRepository: SQLAlchemy async + asyncpg, JSONB columns

``transition`` is a compare-and-set on the status column and is the only way
processing status changes. Two callers racing to claim the same item cannot
both succeed, which is what keeps a single pipeline run in flight per item.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import text

from .clients.postgres_client import PostgresClient, to_pg_ts
from .errors import ItemNotFoundError, StorageError, ValidationError
from .models.action_item import USER_EDITABLE_FIELDS, ActionItem, ActionItemStatus
from .models.content_item import (
    IN_FLIGHT_STATUSES,
    ContentItem,
    ProcessingStatus,
    check_transition,
    utcnow,
)
from .stages.merger import merge_action_items

logger = structlog.get_logger(__name__)

# Fields only the orchestrator may write, and only through transition()
STATUS_FIELDS = frozenset(
    {'processing_status', 'processing_error', 'error_kind', 'failed_stage', 'attempt'}
)

# Fields never written after creation
IMMUTABLE_FIELDS = frozenset({'id', 'organization_id', 'created_at'})


class ContentItemRepository(ABC):
    """Persistence interface for content items."""

    @abstractmethod
    async def create(self, item: ContentItem) -> ContentItem:
        """Insert a new item. Raises ValidationError if the id already exists."""

    @abstractmethod
    async def get(self, item_id: str) -> ContentItem | None:
        """Fetch an item, or None."""

    async def require(self, item_id: str) -> ContentItem:
        """Fetch an item or raise ItemNotFoundError."""
        item = await self.get(item_id)
        if item is None:
            raise ItemNotFoundError(
                f"Content item {item_id} not found", context={'content_item_id': item_id}
            )
        return item

    @abstractmethod
    async def list_by_organization(
        self,
        organization_id: str,
        status: ProcessingStatus | None = None,
        limit: int = 100,
    ) -> list[ContentItem]:
        """Items for an organization, newest first."""

    @abstractmethod
    async def transition(
        self,
        item_id: str,
        expected: Iterable[ProcessingStatus],
        new_status: ProcessingStatus,
        restart: bool = False,
        **fields: Any,
    ) -> ContentItem | None:
        """
        Atomically move an item to ``new_status`` if its current status is in ``expected``.

        Args:
            item_id: Content item id
            expected: Statuses the caller believes the item is in
            new_status: Target status (must be a legal edge from the current one)
            restart: Allow leaving a terminal status (explicit retry / reprocess)
            **fields: Extra status fields written in the same write
                      (processing_error, error_kind, failed_stage, attempt)

        Returns:
            The updated item, or None if the current status was not in ``expected``

        Raises:
            ItemNotFoundError: no such item
            InvalidTransitionError: current -> new_status is not an allowed edge
        """

    @abstractmethod
    async def apply_update(self, item_id: str, fields: dict[str, Any]) -> ContentItem:
        """
        Write stage output fields.

        ``action_items`` is merged with the stored list by natural key so
        user-edited fields survive; every other field is replaced.
        """

    @abstractmethod
    async def update_action_item(
        self,
        item_id: str,
        action_item_id: str,
        status: ActionItemStatus | None = None,
        assignee: str | None = None,
    ) -> ActionItem:
        """Apply a user edit and record which fields the user now owns."""

    @abstractmethod
    async def find_stale(self, older_than: datetime) -> list[ContentItem]:
        """In-flight items whose last update is older than ``older_than``."""


# =============================================================================
# Shared helpers
# =============================================================================


def _check_update_fields(fields: dict[str, Any]) -> None:
    forbidden = (STATUS_FIELDS | IMMUTABLE_FIELDS) & fields.keys()
    if forbidden:
        raise ValidationError(
            'Status and identity fields cannot be written through apply_update',
            context={'fields': sorted(forbidden)},
        )
    unknown = set(fields) - set(ContentItem.model_fields)
    if unknown:
        raise ValidationError('Unknown content item fields', context={'fields': sorted(unknown)})


def _check_status_fields(fields: dict[str, Any]) -> None:
    extra = set(fields) - STATUS_FIELDS
    if extra:
        raise ValidationError(
            'transition() only writes status fields', context={'fields': sorted(extra)}
        )


def _edit_action_item(
    item: ActionItem,
    status: ActionItemStatus | None,
    assignee: str | None,
) -> ActionItem:
    updates: dict[str, Any] = {}
    edited = set(item.user_edited_fields)
    if status is not None:
        updates['status'] = status
        edited.add('status')
    if assignee is not None:
        updates['assignee'] = assignee
        edited.add('assignee')
    if not updates:
        raise ValidationError(
            'No editable fields supplied', context={'editable': sorted(USER_EDITABLE_FIELDS)}
        )
    updates['user_edited_fields'] = edited
    return item.model_copy(update=updates)


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryContentItemRepository(ContentItemRepository):
    """
    Dict-backed store. Items are copied on the way in and out so callers
    never share mutable state with the store.
    """

    def __init__(self):
        self._items: dict[str, ContentItem] = {}
        self._lock = asyncio.Lock()

    async def create(self, item: ContentItem) -> ContentItem:
        async with self._lock:
            if item.id in self._items:
                raise ValidationError(
                    'Content item already exists', context={'content_item_id': item.id}
                )
            self._items[item.id] = item.model_copy(deep=True)
            return item.model_copy(deep=True)

    async def get(self, item_id: str) -> ContentItem | None:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def list_by_organization(
        self,
        organization_id: str,
        status: ProcessingStatus | None = None,
        limit: int = 100,
    ) -> list[ContentItem]:
        items = [
            i
            for i in self._items.values()
            if i.organization_id == organization_id
            and (status is None or i.processing_status == status)
        ]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return [i.model_copy(deep=True) for i in items[:limit]]

    async def transition(
        self,
        item_id: str,
        expected: Iterable[ProcessingStatus],
        new_status: ProcessingStatus,
        restart: bool = False,
        **fields: Any,
    ) -> ContentItem | None:
        _check_status_fields(fields)
        expected_set = frozenset(expected)
        async with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFoundError(
                    f"Content item {item_id} not found", context={'content_item_id': item_id}
                )
            if current.processing_status not in expected_set:
                return None
            check_transition(current.processing_status, new_status, restart=restart)
            updated = current.model_copy(
                update={**fields, 'processing_status': new_status, 'updated_at': utcnow()},
                deep=True,
            )
            self._items[item_id] = updated
            return updated.model_copy(deep=True)

    async def apply_update(self, item_id: str, fields: dict[str, Any]) -> ContentItem:
        _check_update_fields(fields)
        async with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFoundError(
                    f"Content item {item_id} not found", context={'content_item_id': item_id}
                )
            updates = dict(fields)
            if 'action_items' in updates:
                updates['action_items'] = merge_action_items(
                    current.action_items, updates['action_items']
                ).items
            updates['updated_at'] = utcnow()
            updated = current.model_copy(update=updates, deep=True)
            self._items[item_id] = updated
            return updated.model_copy(deep=True)

    async def update_action_item(
        self,
        item_id: str,
        action_item_id: str,
        status: ActionItemStatus | None = None,
        assignee: str | None = None,
    ) -> ActionItem:
        async with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFoundError(
                    f"Content item {item_id} not found", context={'content_item_id': item_id}
                )
            action_items = list(current.action_items)
            for index, action_item in enumerate(action_items):
                if action_item.id == action_item_id:
                    edited = _edit_action_item(action_item, status, assignee)
                    action_items[index] = edited
                    self._items[item_id] = current.model_copy(
                        update={'action_items': action_items}, deep=True
                    )
                    return edited.model_copy(deep=True)
        raise ItemNotFoundError(
            f"Action item {action_item_id} not found",
            context={'content_item_id': item_id, 'action_item_id': action_item_id},
        )

    async def find_stale(self, older_than: datetime) -> list[ContentItem]:
        return [
            i.model_copy(deep=True)
            for i in self._items.values()
            if i.processing_status in IN_FLIGHT_STATUSES and i.updated_at < older_than
        ]


# =============================================================================
# Postgres implementation
# =============================================================================

_JSON_COLUMNS = frozenset(
    {'metadata', 'transcript_segments', 'speakers', 'tags', 'action_items', 'chapters'}
)

_COLUMNS = (
    'id', 'organization_id', 'source_type', 'external_id', 'title', 'raw_payload_ref',
    'media_ref', 'metadata', 'transcript', 'transcript_segments', 'duration_seconds',
    'speakers', 'summary', 'tags', 'action_items', 'chapters', 'processing_status',
    'processing_error', 'error_kind', 'failed_stage', 'attempt', 'created_at', 'updated_at',
)


def _to_param(name: str, value: Any) -> Any:
    """Convert a model field value to an asyncpg-compatible parameter."""
    if value is None:
        return None
    if name in _JSON_COLUMNS:
        if isinstance(value, list):
            value = [v.model_dump(mode='json') if isinstance(v, BaseModel) else v for v in value]
        return json.dumps(value)
    if name in ('created_at', 'updated_at'):
        return to_pg_ts(value)
    if hasattr(value, 'value'):
        return value.value
    return value


def _row_to_item(row: Any) -> ContentItem:
    data = dict(row._mapping)
    for name in _JSON_COLUMNS:
        if isinstance(data.get(name), str):
            data[name] = json.loads(data[name])
    return ContentItem.model_validate(data)


class PostgresContentItemRepository(ContentItemRepository):
    """Content items stored in the ``content_items`` table."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    async def create(self, item: ContentItem) -> ContentItem:
        columns = ', '.join(_COLUMNS)
        placeholders = ', '.join(
            f"CAST(:{c} AS JSONB)" if c in _JSON_COLUMNS else f":{c}" for c in _COLUMNS
        )
        sql = text(f"""
            INSERT INTO content_items ({columns})
            VALUES ({placeholders})
            ON CONFLICT (id) DO NOTHING
            RETURNING id
        """)
        params = {c: _to_param(c, getattr(item, c)) for c in _COLUMNS}
        async with self.postgres.engine.begin() as conn:
            result = await conn.execute(sql, params)
            if result.first() is None:
                raise ValidationError(
                    'Content item already exists', context={'content_item_id': item.id}
                )
        logger.debug('content_item_repository.created', content_item_id=item.id)
        return item

    async def get(self, item_id: str) -> ContentItem | None:
        sql = text('SELECT * FROM content_items WHERE id = :id')
        async with self.postgres.engine.connect() as conn:
            row = (await conn.execute(sql, {'id': item_id})).first()
        return _row_to_item(row) if row else None

    async def list_by_organization(
        self,
        organization_id: str,
        status: ProcessingStatus | None = None,
        limit: int = 100,
    ) -> list[ContentItem]:
        sql = text("""
            SELECT * FROM content_items
            WHERE organization_id = :organization_id
              AND (CAST(:status AS TEXT) IS NULL OR processing_status = :status)
            ORDER BY created_at DESC
            LIMIT :limit
        """)
        params = {
            'organization_id': organization_id,
            'status': status.value if status else None,
            'limit': limit,
        }
        async with self.postgres.engine.connect() as conn:
            rows = (await conn.execute(sql, params)).all()
        return [_row_to_item(r) for r in rows]

    async def transition(
        self,
        item_id: str,
        expected: Iterable[ProcessingStatus],
        new_status: ProcessingStatus,
        restart: bool = False,
        **fields: Any,
    ) -> ContentItem | None:
        _check_status_fields(fields)
        expected_set = frozenset(expected)

        current = await self.get(item_id)
        if current is None:
            raise ItemNotFoundError(
                f"Content item {item_id} not found", context={'content_item_id': item_id}
            )
        if current.processing_status not in expected_set:
            return None
        check_transition(current.processing_status, new_status, restart=restart)

        assignments = ['processing_status = :new_status', 'updated_at = :updated_at']
        params: dict[str, Any] = {
            'id': item_id,
            'expected': [s.value for s in expected_set],
            'new_status': new_status.value,
            'updated_at': utcnow(),
        }
        for name, value in fields.items():
            assignments.append(f"{name} = :{name}")
            params[name] = _to_param(name, value)

        # The WHERE clause is the compare-and-set; the read above only validates the edge
        sql = text(f"""
            UPDATE content_items
            SET {', '.join(assignments)}
            WHERE id = :id AND processing_status = ANY(CAST(:expected AS TEXT[]))
            RETURNING *
        """)
        async with self.postgres.engine.begin() as conn:
            row = (await conn.execute(sql, params)).first()
        return _row_to_item(row) if row else None

    async def apply_update(self, item_id: str, fields: dict[str, Any]) -> ContentItem:
        _check_update_fields(fields)
        async with self.postgres.engine.begin() as conn:
            locked = (
                await conn.execute(
                    text('SELECT * FROM content_items WHERE id = :id FOR UPDATE'), {'id': item_id}
                )
            ).first()
            if locked is None:
                raise ItemNotFoundError(
                    f"Content item {item_id} not found", context={'content_item_id': item_id}
                )

            updates = dict(fields)
            if 'action_items' in updates:
                current = _row_to_item(locked)
                updates['action_items'] = merge_action_items(
                    current.action_items, updates['action_items']
                ).items
            updates['updated_at'] = utcnow()

            assignments = [
                f"{name} = CAST(:{name} AS JSONB)" if name in _JSON_COLUMNS else f"{name} = :{name}"
                for name in updates
            ]
            params = {name: _to_param(name, value) for name, value in updates.items()}
            params['id'] = item_id
            row = (
                await conn.execute(
                    text(f"UPDATE content_items SET {', '.join(assignments)} WHERE id = :id RETURNING *"),
                    params,
                )
            ).first()
        if row is None:
            raise StorageError('Update returned no row', context={'content_item_id': item_id})
        return _row_to_item(row)

    async def update_action_item(
        self,
        item_id: str,
        action_item_id: str,
        status: ActionItemStatus | None = None,
        assignee: str | None = None,
    ) -> ActionItem:
        async with self.postgres.engine.begin() as conn:
            row = (
                await conn.execute(
                    text('SELECT * FROM content_items WHERE id = :id FOR UPDATE'), {'id': item_id}
                )
            ).first()
            if row is None:
                raise ItemNotFoundError(
                    f"Content item {item_id} not found", context={'content_item_id': item_id}
                )
            current = _row_to_item(row)
            action_items = list(current.action_items)
            for index, action_item in enumerate(action_items):
                if action_item.id == action_item_id:
                    edited = _edit_action_item(action_item, status, assignee)
                    action_items[index] = edited
                    await conn.execute(
                        text("""
                            UPDATE content_items
                            SET action_items = CAST(:action_items AS JSONB)
                            WHERE id = :id
                        """),
                        {'id': item_id, 'action_items': _to_param('action_items', action_items)},
                    )
                    return edited
        raise ItemNotFoundError(
            f"Action item {action_item_id} not found",
            context={'content_item_id': item_id, 'action_item_id': action_item_id},
        )

    async def find_stale(self, older_than: datetime) -> list[ContentItem]:
        sql = text("""
            SELECT * FROM content_items
            WHERE processing_status = ANY(CAST(:statuses AS TEXT[]))
              AND updated_at < :older_than
            ORDER BY updated_at
        """)
        params = {
            'statuses': [s.value for s in IN_FLIGHT_STATUSES],
            'older_than': older_than,
        }
        async with self.postgres.engine.connect() as conn:
            rows = (await conn.execute(sql, params)).all()
        return [_row_to_item(r) for r in rows]
