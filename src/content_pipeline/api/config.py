"""Configuration for the FastAPI service."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # OpenAI
    OPENAI_API_KEY: str

    # Storage; empty values select the in-memory stores
    DATABASE_URL: str = ""
    NEO4J_URI: str = ""
    NEO4J_USERNAME: str = "neo4j"
    NEO4J_PASSWORD: str = ""
    NEO4J_DATABASE: str = "neo4j"

    # Speaker diarization (optional)
    ASSEMBLYAI_API_KEY: str = ""

    # Auth
    WORKER_API_KEY: str

    # Processing
    WORKER_CONCURRENCY: int = Field(default=4, ge=1, le=64)
    STAGE_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    STAGE_BACKOFF_MAX_SECONDS: float = Field(default=10.0, gt=0)
    STALE_AFTER_MINUTES: int = Field(default=60, ge=1)

    # Knowledge graph
    TOPIC_AI_NAMING: bool = True
    CONFLICT_LLM_CLASSIFIER: bool = False
    CONFLICT_CACHE: bool = False

    LOG_JSON: bool = True


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
