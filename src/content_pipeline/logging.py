"""
Structured logging for the content processing pipeline.

structlog is configured once per process (JSON in production, console in
development). Pipeline code binds identifiers with ``logging_context`` and
every log line emitted underneath carries them:

- ``trace_id``: the queue job (or request) that caused the work
- ``organization_id`` / ``content_item_id``: what is being processed
- ``stage``: set while a ``PipelineTimer`` stage is running
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator

import structlog
from structlog.types import Processor

from .config import config

LOG_CONTEXT_KEYS = ('trace_id', 'organization_id', 'content_item_id', 'stage')

_context: dict[str, ContextVar[str | None]] = {
    key: ContextVar(key, default=None) for key in LOG_CONTEXT_KEYS
}

# Client libraries that log every request at INFO
_NOISY_LOGGERS = ('httpx', 'httpcore', 'neo4j', 'openai')


def current_context() -> dict[str, str]:
    """Identifiers bound in the current context, unset keys omitted."""
    return {key: value for key, var in _context.items() if (value := var.get()) is not None}


def get_trace_id() -> str | None:
    return _context['trace_id'].get()


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor adding bound identifiers. Values passed to the log call win."""
    for key, value in current_context().items():
        event_dict.setdefault(key, value)
    return event_dict


def configure_logging(
    json_output: bool = False,
    log_level: str | None = None,
) -> None:
    """
    Configure structlog for the application.

    Args:
        json_output: JSON lines (production) instead of console output
        log_level: Override log level (defaults to config.LOG_LEVEL)
    """
    level = log_level or config.LOG_LEVEL
    level_num = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level_num)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level_num, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_context_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso'),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def logging_context(**values: str | None) -> Generator[None, None, None]:
    """
    Bind identifiers for every log line emitted inside the block.

    Keys must be in LOG_CONTEXT_KEYS; ``None`` leaves a key as it was.
    Previous values are restored on exit, so blocks nest.

    Usage:
        with logging_context(organization_id=item.organization_id, content_item_id=item.id):
            logger.info('orchestrator.triggered')
    """
    unknown = set(values) - set(LOG_CONTEXT_KEYS)
    if unknown:
        raise TypeError(f"Unknown logging context keys: {sorted(unknown)}")

    tokens = [(_context[key], _context[key].set(value)) for key, value in values.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class PipelineTimer:
    """
    Wall-clock durations per stage, in milliseconds.

    A stage that runs more than once in the same timer (a resumed or
    repeated step) accumulates. Logs emitted inside ``stage()`` carry the
    stage name.

    Usage:
        timer = PipelineTimer()
        with timer.stage('transcription'):
            ...
        logger.info('orchestrator.completed', **timer.summary())
    """

    def __init__(self):
        self.stages: dict[str, float] = {}
        self.start_time: float = time.perf_counter()

    @contextmanager
    def stage(self, name: str) -> Generator[None, None, None]:
        started = time.perf_counter()
        try:
            with logging_context(stage=name):
                yield
        finally:
            self.record(name, (time.perf_counter() - started) * 1000)

    def record(self, name: str, duration_ms: float) -> None:
        self.stages[name] = self.stages.get(name, 0.0) + duration_ms

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    @property
    def slowest_stage(self) -> str | None:
        return max(self.stages, key=self.stages.__getitem__) if self.stages else None

    def summary(self) -> dict[str, Any]:
        return {
            'total_ms': round(self.total_ms, 2),
            'stages': {k: round(v, 2) for k, v in self.stages.items()},
            'slowest_stage': self.slowest_stage,
        }


# Development defaults until the service entry point reconfigures
configure_logging(json_output=False)
