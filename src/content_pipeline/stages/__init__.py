"""
Stage executors for the content processing pipeline.

Each stage maps a ContentItem snapshot to a StageUpdate and shares no
mutable state with the others.
"""

from .analysis import AnalysisStage
from .base import EmbeddingSet, StageExecutor, StageUpdate
from .chunking import TextChunk, chunk_transcript, estimate_tokens
from .diarization import DiarizationStage
from .embedding import EmbeddingStage
from .merger import ActionItemMerger, MergeResult, merge_action_items
from .transcription import TranscriptionStage

__all__ = [
    'ActionItemMerger',
    'AnalysisStage',
    'DiarizationStage',
    'EmbeddingSet',
    'EmbeddingStage',
    'MergeResult',
    'StageExecutor',
    'StageUpdate',
    'TextChunk',
    'TranscriptionStage',
    'chunk_transcript',
    'estimate_tokens',
    'merge_action_items',
]
