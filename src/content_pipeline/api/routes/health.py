"""Health check endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Check store connectivity and report the worker queue."""
    services = request.app.state.services
    checks: dict[str, bool] = {}
    try:
        if services.postgres is not None:
            checks["postgres"] = await services.postgres.verify_connectivity()
        if services.neo4j is not None:
            checks["neo4j"] = (await services.neo4j.health_check())["healthy"]
    except Exception:
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    queue = services.orchestrator.queue
    body = {"status": "ok", "checks": checks, "workers_running": queue.running, "queued": queue.pending}
    if not all(checks.values()):
        body["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=body)
    return body
