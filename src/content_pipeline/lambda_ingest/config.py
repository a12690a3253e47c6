"""Configuration for the Lambda trigger forwarder."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class LambdaConfig(BaseSettings):
    """
    Lambda environment variables.

    HTTP_TIMEOUT_SECONDS bounds one POST /items/{id}/process call. The
    service answers as soon as the job is queued, so this stays well under
    the SQS visibility timeout even with MAX_RETRIES attempts.
    """

    API_BASE_URL: str
    WORKER_API_KEY: str = Field(min_length=1)
    HTTP_TIMEOUT_SECONDS: int = Field(default=30, ge=5, le=120)
    MAX_RETRIES: int = Field(default=2, ge=0, le=5)

    @field_validator("API_BASE_URL")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("API_BASE_URL must be an http(s) URL")
        return value


@lru_cache
def get_lambda_config() -> LambdaConfig:
    return LambdaConfig()
