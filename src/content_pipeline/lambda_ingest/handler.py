"""Lambda entry point: SQS -> parse EventBridge trigger -> POST to the service API.

Uses AWS Lambda Powertools for structured logging, tracing, and batch processing.
Failed records are reported back to SQS individually and redelivered.
"""

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.batch import (
    BatchProcessor,
    EventType,
    process_partial_response,
)
from aws_lambda_powertools.utilities.data_classes.sqs_event import SQSRecord

from .api_client import submit_trigger
from .config import LambdaConfig
from .envelope import parse_sqs_record_body

# Module-level singletons survive across warm Lambda invocations
processor = BatchProcessor(event_type=EventType.SQS, raise_on_entire_batch_failure=False)
logger = Logger(service="content-pipeline-ingest", log_uncaught_exceptions=True)
tracer = Tracer(service="content-pipeline-ingest")

_config: LambdaConfig | None = None


def _get_config() -> LambdaConfig:
    """Lazy-init config singleton."""
    global _config
    if _config is None:
        _config = LambdaConfig()
    return _config


@tracer.capture_method
def process_record(record: SQSRecord) -> None:
    """Forward one trigger; raising marks the record as failed."""
    config = _get_config()
    event = parse_sqs_record_body(record.body)

    logger.info(
        "record.processing",
        extra={
            "content_item_id": event.content_item_id,
            "reprocess": event.reprocess,
            "message_id": record.message_id,
        },
    )

    result = submit_trigger(config, event)

    if not result.success:
        logger.error(
            "record.failed",
            extra={
                "content_item_id": event.content_item_id,
                "status_code": result.status_code,
                "error": result.error,
                "message_id": record.message_id,
            },
        )
        raise RuntimeError(f"Service returned failure: {result.status_code}: {result.error}")

    logger.info(
        "record.success",
        extra={
            "content_item_id": event.content_item_id,
            "status_code": result.status_code,
            "processing_status": result.processing_status,
            "message_id": record.message_id,
        },
    )


@logger.inject_lambda_context(log_event=False)
@tracer.capture_lambda_handler
def lambda_handler(event: dict, context) -> dict:
    """Lambda entry point: processes an SQS batch with partial failure reporting."""
    return process_partial_response(
        event=event,
        record_handler=process_record,
        processor=processor,
        context=context,
    )
