"""POST /search: semantic search over transcripts and decisions."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from ...search import SearchFilters
from ..auth import verify_worker_token

router = APIRouter(dependencies=[Depends(verify_worker_token)])


class SearchRequest(SearchFilters):
    query: str


@router.post("/search")
async def semantic_search(body: SearchRequest, request: Request) -> dict[str, Any]:
    filters = SearchFilters.model_validate(body.model_dump(exclude={"query"}))
    response = await request.app.state.services.search.search(body.query, filters)
    return response.to_dict()
