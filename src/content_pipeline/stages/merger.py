"""
Action item merger.

Re-running analysis produces a fresh list of action items. That list is a
full replacement of the AI-derived fields only:

- extracted items are matched to stored ones by natural key
  (timestamp bucket + normalized title), falling back to title alone
- matched items keep their id and every field listed in
  ``user_edited_fields``; AI-derived fields come from the new extraction
- unmatched extracted items are created
- stored items the new run no longer produces are dropped, unless a user
  has edited them
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from ..models.action_item import ActionItem, normalize_text

logger = structlog.get_logger(__name__)

# Fields the analysis stage owns. Everything else belongs to the user.
AI_DERIVED_FIELDS = ('title', 'assignee', 'priority', 'due_date', 'timestamp_start', 'confidence')


@dataclass
class MergeResult:
    """Outcome of merging a new extraction into stored action items."""

    items: list[ActionItem]
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    retained_user_edited: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'total': len(self.items),
            'created': len(self.created),
            'updated': len(self.updated),
            'removed': len(self.removed),
            'retained_user_edited': len(self.retained_user_edited),
        }


class ActionItemMerger:
    """Merges extracted action items into the stored set for one content item."""

    def merge(self, existing: list[ActionItem], extracted: list[ActionItem]) -> MergeResult:
        by_key: dict[tuple[int | None, str], ActionItem] = {}
        by_title: dict[str, list[ActionItem]] = {}
        for item in existing:
            by_key.setdefault(item.natural_key, item)
            by_title.setdefault(normalize_text(item.title), []).append(item)

        matched_ids: set[str] = set()
        result = MergeResult(items=[])

        for new in extracted:
            current = by_key.get(new.natural_key)
            if current is None or current.id in matched_ids:
                # Timestamp drift: fall back to the first unclaimed item with the same title
                current = next(
                    (
                        c
                        for c in by_title.get(normalize_text(new.title), [])
                        if c.id not in matched_ids
                    ),
                    None,
                )

            if current is None:
                result.items.append(new)
                result.created.append(new.id)
                continue

            matched_ids.add(current.id)
            result.items.append(self._merge_one(current, new))
            result.updated.append(current.id)

        for item in existing:
            if item.id in matched_ids:
                continue
            if item.user_edited:
                result.items.append(item)
                result.retained_user_edited.append(item.id)
            else:
                result.removed.append(item.id)

        logger.debug('action_item_merger.merged', **result.to_dict())
        return result

    def _merge_one(self, current: ActionItem, new: ActionItem) -> ActionItem:
        updates: dict[str, Any] = {}
        for name in AI_DERIVED_FIELDS:
            if name in current.user_edited_fields:
                continue
            updates[name] = getattr(new, name)
        return current.model_copy(update=updates)


def merge_action_items(existing: list[ActionItem], extracted: list[ActionItem]) -> MergeResult:
    """Convenience wrapper around ActionItemMerger.merge."""
    return ActionItemMerger().merge(existing, extracted)
