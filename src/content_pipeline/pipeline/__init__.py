"""Processing orchestration: the state machine driver and its worker queue."""

from .orchestrator import PipelineRunResult, ProcessingOrchestrator, first_stage
from .queue import ProcessingJob, ProcessingQueue

__all__ = [
    'PipelineRunResult',
    'ProcessingJob',
    'ProcessingOrchestrator',
    'ProcessingQueue',
    'first_stage',
]
