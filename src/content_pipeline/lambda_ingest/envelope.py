"""Parse EventBridge-wrapped SQS message bodies into processing triggers."""

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TriggerEvent:
    """Request to (re)process one content item."""

    content_item_id: str
    reprocess: bool = False
    organization_id: str | None = None


def parse_sqs_record_body(body: str) -> TriggerEvent:
    """
    Extract the trigger from an EventBridge-wrapped SQS message body.

    SQS body format:
    {
        "version": "0",
        "detail-type": "ContentItem.process",
        "source": "content-pipeline.ingest",
        "detail": {"content_item_id": "...", "reprocess": false, "organization_id": "..."}
    }
    """
    try:
        event = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in SQS body: {e}") from e

    if not isinstance(event, dict) or "detail" not in event:
        keys = list(event.keys()) if isinstance(event, dict) else type(event).__name__
        raise ValueError(f"Missing 'detail' key in EventBridge event. Keys present: {keys}")

    detail: dict[str, Any] = event["detail"]
    item_id = detail.get("content_item_id")
    if not item_id or not isinstance(item_id, str):
        raise ValueError("EventBridge detail has no content_item_id")

    return TriggerEvent(
        content_item_id=item_id,
        reprocess=bool(detail.get("reprocess", False)),
        organization_id=detail.get("organization_id"),
    )
