"""Knowledge graph routes: topics and decision conflicts."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auth import verify_worker_token

router = APIRouter(prefix="/organizations/{organization_id}", dependencies=[Depends(verify_worker_token)])


@router.get("/topics")
async def list_topics(organization_id: str, request: Request) -> dict[str, Any]:
    topics = await request.app.state.services.knowledge.list_topics(organization_id)
    return {
        "organization_id": organization_id,
        "topics": [t.model_dump(mode="json", exclude={"centroid"}) for t in topics],
    }


@router.post("/topics/rebuild")
async def rebuild_topics(organization_id: str, request: Request) -> dict[str, Any]:
    result = await request.app.state.services.knowledge.rebuild_topics(organization_id)
    return result.to_dict()


@router.get("/conflicts")
async def detect_conflicts(organization_id: str, request: Request) -> dict[str, Any]:
    report = await request.app.state.services.knowledge.detect_conflicts(organization_id)
    return report.to_dict()
