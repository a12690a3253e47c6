"""FastAPI application for the content processing service."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from knowledge_graph.clients.neo4j_client import Neo4jClient

from ..clients.openai_client import OpenAIClient
from ..clients.postgres_client import PostgresClient
from ..errors import InvalidTransitionError, ItemNotFoundError, ValidationError
from ..logging import configure_logging
from .config import get_settings
from .routes.health import router as health_router
from .routes.items import router as items_router
from .routes.knowledge import router as knowledge_router
from .routes.search import router as search_router
from .services import build_services

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize persistent clients and the worker pool at startup, clean up at shutdown."""
    settings = get_settings()
    configure_logging(json_output=settings.LOG_JSON)

    logger.info("lifespan.startup", postgres=bool(settings.DATABASE_URL), neo4j=bool(settings.NEO4J_URI))

    openai = OpenAIClient(api_key=settings.OPENAI_API_KEY)

    postgres: PostgresClient | None = None
    if settings.DATABASE_URL:
        postgres = PostgresClient(settings.DATABASE_URL)
        await postgres.connect()
        await postgres.setup_schema()

    neo4j: Neo4jClient | None = None
    if settings.NEO4J_URI:
        neo4j = Neo4jClient(
            uri=settings.NEO4J_URI,
            username=settings.NEO4J_USERNAME,
            password=settings.NEO4J_PASSWORD,
            database=settings.NEO4J_DATABASE,
        )
        await neo4j.connect()
        await neo4j.setup_schema()

    services = build_services(settings, openai, postgres=postgres, neo4j=neo4j)
    await services.start()

    # Items left in flight by a previous process become retryable failures
    recovered = await services.orchestrator.recover_stale(services.stale_after)
    if recovered:
        logger.warning("lifespan.stale_items_recovered", count=len(recovered))

    app.state.services = services

    logger.info("lifespan.ready")
    yield

    # Shutdown
    logger.info("lifespan.shutdown")
    await services.close()
    if neo4j is not None:
        await neo4j.close()
    if postgres is not None:
        await postgres.close()


app = FastAPI(
    title="content-pipeline",
    description="Content processing and knowledge extraction service",
    lifespan=lifespan,
)


@app.exception_handler(ItemNotFoundError)
async def item_not_found_handler(request: Request, exc: ItemNotFoundError):
    return JSONResponse(status_code=404, content={"error": exc.message})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": exc.message, "context": exc.context})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"error": exc.message})


app.include_router(health_router)
app.include_router(items_router)
app.include_router(search_router)
app.include_router(knowledge_router)
