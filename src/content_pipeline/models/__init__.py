"""
Data models for the content processing pipeline.

All records carry organization_id for multi-tenancy.
"""

from .action_item import ActionItem, ActionItemPriority, ActionItemStatus
from .content_item import (
    Chapter,
    ContentItem,
    PipelineStage,
    ProcessingPhase,
    ProcessingStatus,
    ProcessingStatusView,
    SourceType,
    SpeakerSummary,
    TranscriptSegment,
)
from .embedding import Embedding, OwnerType, SearchResult
from .raw_item import RawContentItem

__all__ = [
    'ActionItem',
    'ActionItemPriority',
    'ActionItemStatus',
    'Chapter',
    'ContentItem',
    'PipelineStage',
    'ProcessingPhase',
    'ProcessingStatus',
    'ProcessingStatusView',
    'SourceType',
    'SpeakerSummary',
    'TranscriptSegment',
    'Embedding',
    'OwnerType',
    'SearchResult',
    'RawContentItem',
]
