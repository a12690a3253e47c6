"""
In-process task queue for pipeline runs.

An asyncio worker pool with:
- bounded concurrency (``concurrency`` workers)
- at-least-once delivery: a job whose handler raises is redelivered up to
  ``max_deliveries`` times, then handed to ``on_dead_letter``
- collapsing of duplicate submissions for an item that is already queued

Handlers must be idempotent; a redelivered job may find its work partly or
fully done.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from ..models.content_item import PipelineStage

logger = structlog.get_logger(__name__)


@dataclass
class ProcessingJob:
    """One requested pipeline run for a content item."""

    content_item_id: str
    start_stage: PipelineStage
    job_id: str = field(default_factory=lambda: str(uuid4()))
    # Caller's trace, when the trigger ran inside one
    trace_id: str | None = None
    deliveries: int = 0


JobHandler = Callable[[ProcessingJob], Awaitable[object]]
DeadLetterHandler = Callable[[ProcessingJob, BaseException], Awaitable[None]]


class ProcessingQueue:
    """Worker pool consuming ProcessingJobs."""

    def __init__(
        self,
        handler: JobHandler,
        concurrency: int = 4,
        max_deliveries: int = 3,
        on_dead_letter: DeadLetterHandler | None = None,
    ):
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_deliveries = max(1, max_deliveries)
        self.on_dead_letter = on_dead_letter

        self._queue: asyncio.Queue[ProcessingJob] = asyncio.Queue()
        self._queued_items: set[str] = set()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: ProcessingJob) -> bool:
        """
        Enqueue a job.

        Returns False when a job for the same content item is already waiting.
        """
        if job.content_item_id in self._queued_items:
            logger.debug('processing_queue.duplicate_collapsed', content_item_id=job.content_item_id)
            return False
        self._queued_items.add(job.content_item_id)
        self._queue.put_nowait(job)
        logger.debug(
            'processing_queue.submitted',
            content_item_id=job.content_item_id,
            start_stage=job.start_stage.value,
            job_id=job.job_id,
        )
        return True

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f'processing-worker-{n}')
            for n in range(self.concurrency)
        ]
        logger.info('processing_queue.started', workers=self.concurrency)

    async def join(self) -> None:
        """Wait until every submitted job (including redeliveries) is done."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain and self._workers:
            await self.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info('processing_queue.stopped')

    async def _worker(self, number: int) -> None:
        while True:
            job = await self._queue.get()
            self._queued_items.discard(job.content_item_id)
            job.deliveries += 1
            try:
                await self.handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_failure(job, e, number)
            finally:
                self._queue.task_done()

    async def _handle_failure(self, job: ProcessingJob, exc: Exception, worker: int) -> None:
        if job.deliveries < self.max_deliveries:
            logger.warning(
                'processing_queue.redelivering',
                content_item_id=job.content_item_id,
                job_id=job.job_id,
                deliveries=job.deliveries,
                error=str(exc),
                worker=worker,
            )
            # Redelivery bypasses duplicate collapsing: this job carries the claimed run
            self._queued_items.add(job.content_item_id)
            self._queue.put_nowait(job)
            return

        logger.error(
            'processing_queue.dead_letter',
            content_item_id=job.content_item_id,
            job_id=job.job_id,
            deliveries=job.deliveries,
            error=str(exc),
        )
        if self.on_dead_letter is not None:
            try:
                await self.on_dead_letter(job, exc)
            except Exception:
                logger.exception('processing_queue.dead_letter_handler_failed', job_id=job.job_id)
