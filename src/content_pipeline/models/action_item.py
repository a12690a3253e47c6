"""
ActionItem model.

Action items are created by the analysis stage and later edited by users.
The two sides own different fields:

- AI-derived: title, priority, due_date, timestamp_start, confidence, and the
  assignee until a user sets it
- User-owned once edited: status, assignee

Re-running analysis replaces AI-derived fields only; anything recorded in
``user_edited_fields`` survives (see stages.merger).
"""

import re
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class ActionItemStatus(str, Enum):
    """Status lifecycle for action items."""

    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class ActionItemPriority(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


# Fields a user may change through the API
USER_EDITABLE_FIELDS = frozenset({'status', 'assignee'})

_NON_WORD = re.compile(r'[^a-z0-9 ]+')


def normalize_text(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    return ' '.join(_NON_WORD.sub(' ', text.lower()).split())


class ActionItem(BaseModel):
    """A task extracted from a content item."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    content_item_id: str

    # AI-derived
    title: str = Field(..., min_length=1)
    assignee: str | None = None
    priority: ActionItemPriority = ActionItemPriority.MEDIUM
    due_date: datetime | None = None
    timestamp_start: float | None = Field(
        default=None, ge=0.0, description='Offset into the media where the item was mentioned'
    )
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    # User-owned after the first edit
    status: ActionItemStatus = ActionItemStatus.PENDING
    user_edited_fields: set[str] = Field(default_factory=set)

    @property
    def natural_key(self) -> tuple[int | None, str]:
        """
        Stable identity across re-analysis runs.

        Timestamps are bucketed to whole seconds so that small drifts in the
        model's reported offset still resolve to the same item.
        """
        ts = int(self.timestamp_start) if self.timestamp_start is not None else None
        return (ts, normalize_text(self.title))

    @property
    def user_edited(self) -> bool:
        return bool(self.user_edited_fields)
