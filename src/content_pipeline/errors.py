"""
Custom exceptions and error handling for the content processing pipeline.

Provides:
- Typed exception hierarchy for different failure modes
- Transient vs. fatal classification for stage executors
- Error context preservation for debugging
- Partial success handling for batch operations
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
import openai


class ContentPipelineError(Exception):
    """Base exception for all content pipeline errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# =============================================================================
# Client Errors
# =============================================================================


class ClientError(ContentPipelineError):
    """Base class for client-related errors."""

    pass


class OpenAIError(ClientError):
    """Error from OpenAI API calls."""

    pass


class OpenAIRateLimitError(OpenAIError):
    """Rate limit exceeded on OpenAI API."""

    pass


class OpenAIModelError(OpenAIError):
    """Model refused request or returned invalid response."""

    pass


class StorageError(ClientError):
    """Error from the relational store (content items, embeddings)."""

    pass


class Neo4jError(ClientError):
    """Error from Neo4j database operations."""

    pass


class Neo4jConnectionError(Neo4jError):
    """Failed to connect to Neo4j database."""

    pass


class Neo4jQueryError(Neo4jError):
    """Error executing Neo4j query."""

    pass


class Neo4jConstraintError(Neo4jError):
    """Constraint violation in Neo4j (e.g., duplicate unique key)."""

    pass


# =============================================================================
# Pipeline Errors
# =============================================================================


class ErrorKind(str, Enum):
    """How a failed item should be presented to the user."""

    TRANSIENT = 'transient'
    FATAL_INPUT = 'fatal_input'
    INTERNAL = 'internal'


class PipelineError(ContentPipelineError):
    """Base class for pipeline-related errors."""

    pass


class ValidationError(PipelineError):
    """Input validation failed."""

    pass


class ItemNotFoundError(PipelineError):
    """Content item does not exist."""

    pass


class InvalidTransitionError(PipelineError):
    """A status transition outside the allowed edges was requested."""

    pass


class StageError(PipelineError):
    """Failure raised by a stage executor."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.stage = stage

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class TransientError(StageError):
    """Network or timeout failure. Retried with exponential backoff."""

    kind = ErrorKind.TRANSIENT


class FatalInputError(StageError):
    """Bad or unsupported content. Never retried."""

    kind = ErrorKind.FATAL_INPUT


# =============================================================================
# Partial Success Handling
# =============================================================================


@dataclass
class ItemResult:
    """Result for a single item in a batch operation."""

    item_id: str | None
    success: bool
    error: ContentPipelineError | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class PartialSuccessResult:
    """
    Result of a batch operation that may partially succeed.

    Allows processing to continue even when some items fail,
    while preserving error context for debugging.
    """

    succeeded: list[ItemResult] = field(default_factory=list)
    failed: list[ItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def total_count(self) -> int:
        return self.success_count + self.failure_count

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0

    @property
    def partial_success(self) -> bool:
        return self.success_count > 0 and self.failure_count > 0

    def add_success(
        self,
        item_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record a successful item."""
        self.succeeded.append(
            ItemResult(item_id=item_id, success=True, data=data or {})
        )

    def add_failure(
        self,
        error: ContentPipelineError,
        item_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record a failed item."""
        self.failed.append(
            ItemResult(item_id=item_id, success=False, error=error, data=data or {})
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'total_count': self.total_count,
            'all_succeeded': self.all_succeeded,
            'succeeded_ids': [r.item_id for r in self.succeeded if r.item_id],
            'failed_ids': [r.item_id for r in self.failed if r.item_id],
            'errors': [
                {'item_id': r.item_id, 'error': str(r.error)}
                for r in self.failed
                if r.error
            ],
        }


# =============================================================================
# Error Handling Utilities
# =============================================================================


def wrap_openai_error(exc: Exception, context: dict[str, Any] | None = None) -> OpenAIError:
    """
    Wrap an OpenAI exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        Typed OpenAIError subclass
    """
    error_str = str(exc).lower()
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if isinstance(exc, openai.RateLimitError) or 'rate limit' in error_str or 'rate_limit' in error_str:
        return OpenAIRateLimitError(
            f"OpenAI rate limit exceeded: {exc}",
            context=ctx,
        )
    elif isinstance(exc, openai.ContentFilterFinishReasonError) or 'content policy' in error_str:
        return OpenAIModelError(
            f"OpenAI model refused request: {exc}",
            context=ctx,
        )
    else:
        return OpenAIError(
            f"OpenAI API error: {exc}",
            context=ctx,
        )


def wrap_neo4j_error(exc: Exception, context: dict[str, Any] | None = None) -> Neo4jError:
    """
    Wrap a Neo4j exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        Typed Neo4jError subclass
    """
    error_str = str(exc).lower()
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if 'connection' in error_str or 'connect' in error_str:
        return Neo4jConnectionError(
            f"Neo4j connection failed: {exc}",
            context=ctx,
        )
    elif 'constraint' in error_str or 'unique' in error_str:
        return Neo4jConstraintError(
            f"Neo4j constraint violation: {exc}",
            context=ctx,
        )
    else:
        return Neo4jQueryError(
            f"Neo4j query error: {exc}",
            context=ctx,
        )


# Exceptions from the network / provider layer that are worth retrying
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

# Provider rejections of the input itself
_FATAL_TYPES: tuple[type[BaseException], ...] = (
    openai.BadRequestError,
    openai.UnprocessableEntityError,
)


def classify_exception(
    exc: BaseException,
    stage: str | None = None,
    context: dict[str, Any] | None = None,
) -> StageError:
    """
    Map an arbitrary exception raised inside a stage to a StageError.

    StageErrors pass through unchanged. Timeouts, connection failures, rate
    limits and 5xx responses become TransientError; provider 4xx rejections
    become FatalInputError; anything else is an internal StageError.
    """
    if isinstance(exc, StageError):
        if exc.stage is None:
            exc.stage = stage
        return exc

    ctx = dict(context or {})
    ctx['error_type'] = type(exc).__name__

    if isinstance(exc, ClientError):
        # Client wrappers keep the provider exception as __cause__
        if isinstance(exc, OpenAIRateLimitError):
            return TransientError(exc.message, stage=stage, context={**ctx, **exc.context})
        if exc.__cause__ is not None:
            classified = classify_exception(exc.__cause__, stage=stage, context=ctx)
            classified.context.update(exc.context)
            return classified

    if isinstance(exc, _TRANSIENT_TYPES):
        return TransientError(f"{type(exc).__name__}: {exc}", stage=stage, context=ctx)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        ctx['status_code'] = status
        if status >= 500 or status == 429:
            return TransientError(f"HTTP {status} from {exc.request.url}", stage=stage, context=ctx)
        return FatalInputError(f"HTTP {status} from {exc.request.url}", stage=stage, context=ctx)
    if isinstance(exc, _FATAL_TYPES):
        return FatalInputError(f"Input rejected by provider: {exc}", stage=stage, context=ctx)

    return StageError(f"{type(exc).__name__}: {exc}", stage=stage, context=ctx)
