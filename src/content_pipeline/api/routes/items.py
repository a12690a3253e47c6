"""Content item routes: ingest, trigger processing, status, user edits."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ...models.action_item import ActionItemStatus
from ...models.raw_item import RawContentItem
from ...sources import ingest
from ..auth import verify_worker_token

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/items", dependencies=[Depends(verify_worker_token)])


class ActionItemEdit(BaseModel):
    status: ActionItemStatus | None = None
    assignee: str | None = None


class BatchTrigger(BaseModel):
    item_ids: list[str] = Field(..., min_length=1, max_length=500)
    reprocess: bool = False


@router.post("", status_code=201)
async def create_item(
    raw: RawContentItem,
    request: Request,
    process: bool = Query(default=False, description="Trigger processing right away"),
) -> dict[str, Any]:
    """Ingest a raw content item; it starts in ``pending``."""
    services = request.app.state.services
    item = await ingest(raw, services.repository)
    body: dict[str, Any] = {"item": item.model_dump(mode="json")}
    if process:
        status = await services.orchestrator.trigger(item.id)
        body["status"] = status.model_dump(mode="json")
    return body


@router.post("/process", status_code=202)
async def trigger_batch(batch: BatchTrigger, request: Request) -> dict[str, Any]:
    """Trigger many items at once; unknown ids are reported, not fatal."""
    result = await request.app.state.services.orchestrator.trigger_many(
        batch.item_ids, reprocess=batch.reprocess
    )
    body = result.to_dict()
    body["statuses"] = {r.item_id: r.data["status"] for r in result.succeeded}
    return body


@router.get("/{item_id}")
async def get_item(item_id: str, request: Request) -> dict[str, Any]:
    item = await request.app.state.services.repository.require(item_id)
    return item.model_dump(mode="json")


@router.post("/{item_id}/process", status_code=202)
async def trigger_processing(
    item_id: str,
    request: Request,
    reprocess: bool = Query(default=False),
) -> dict[str, Any]:
    """TriggerProcessing: returns immediately with the item's status."""
    status = await request.app.state.services.orchestrator.trigger(item_id, reprocess=reprocess)
    logger.info("items.process_requested", content_item_id=item_id, status=status.status.value)
    return status.model_dump(mode="json")


@router.get("/{item_id}/status")
async def get_processing_status(item_id: str, request: Request) -> dict[str, Any]:
    status = await request.app.state.services.orchestrator.get_status(item_id)
    return status.model_dump(mode="json")


@router.patch("/{item_id}/action-items/{action_item_id}")
async def edit_action_item(
    item_id: str,
    action_item_id: str,
    edit: ActionItemEdit,
    request: Request,
) -> dict[str, Any]:
    """User edit; edited fields are preserved across reprocessing."""
    updated = await request.app.state.services.repository.update_action_item(
        item_id, action_item_id, status=edit.status, assignee=edit.assignee
    )
    return updated.model_dump(mode="json")


@router.get("/{item_id}/similar")
async def similar_items(
    item_id: str,
    request: Request,
    limit: int = Query(default=5, ge=1, le=50),
) -> dict[str, Any]:
    related = await request.app.state.services.search.find_similar_items(item_id, limit=limit)
    return {"content_item_id": item_id, "results": [r.model_dump(mode="json") for r in related]}
