"""
Content Processing Pipeline

Turns raw content (uploaded video, chat threads, wiki pages, issues) into a
searchable knowledge base: transcripts, summaries, action items, chapters
and vector embeddings, driven through a per-item processing state machine.
"""

__version__ = '0.1.0'

# Re-export key classes for convenience
from .config import Config, config
from .errors import (
    ContentPipelineError,
    ErrorKind,
    FatalInputError,
    InvalidTransitionError,
    ItemNotFoundError,
    PartialSuccessResult,
    StageError,
    TransientError,
    ValidationError,
)
from .logging import (
    PipelineTimer,
    configure_logging,
    get_logger,
    logging_context,
)
from .models import (
    ActionItem,
    ContentItem,
    Embedding,
    OwnerType,
    PipelineStage,
    ProcessingStatus,
    ProcessingStatusView,
    RawContentItem,
    SourceType,
)

__all__ = [
    # Config
    'Config',
    'config',
    # Errors
    'ContentPipelineError',
    'ErrorKind',
    'FatalInputError',
    'InvalidTransitionError',
    'ItemNotFoundError',
    'PartialSuccessResult',
    'StageError',
    'TransientError',
    'ValidationError',
    # Logging
    'PipelineTimer',
    'configure_logging',
    'get_logger',
    'logging_context',
    # Models
    'ActionItem',
    'ContentItem',
    'Embedding',
    'OwnerType',
    'PipelineStage',
    'ProcessingStatus',
    'ProcessingStatusView',
    'RawContentItem',
    'SourceType',
]
