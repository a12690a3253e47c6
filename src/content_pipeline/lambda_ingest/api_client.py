"""HTTP client for forwarding processing triggers to the service API."""

import random
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .envelope import TriggerEvent


@dataclass
class SubmitResult:
    """Result of forwarding one trigger."""

    success: bool
    status_code: int | None = None
    error: str | None = None
    processing_status: str | None = None


def submit_trigger(config: Any, event: TriggerEvent) -> SubmitResult:
    """
    POST /items/{id}/process on the service.

    Retry strategy:
    - 2xx: return success immediately
    - 404: the item is gone; reported as success so the message is dropped
    - other 4xx: return failure immediately (persistent error, no retry)
    - 5xx / network error: retry with exponential backoff + jitter
    """
    url = f"{config.API_BASE_URL.rstrip('/')}/items/{quote(event.content_item_id, safe='')}/process"
    headers = {"Authorization": f"Bearer {config.WORKER_API_KEY}"}
    params = {"reprocess": "true"} if event.reprocess else None

    last_error: str | None = None
    last_status: int | None = None

    for attempt in range(1 + config.MAX_RETRIES):
        try:
            with httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
                response = client.post(url, params=params, headers=headers)
                response.raise_for_status()
                body = response.json() if response.content else {}
                return SubmitResult(
                    success=True,
                    status_code=response.status_code,
                    processing_status=body.get("status"),
                )

        except httpx.HTTPStatusError as e:
            last_status = e.response.status_code
            last_error = f"HTTP {last_status}"

            if last_status == 404:
                return SubmitResult(success=True, status_code=last_status, error="content item not found")

            # 4xx: persistent error, no retry
            if 400 <= last_status < 500:
                return SubmitResult(success=False, status_code=last_status, error=last_error)

            if attempt < config.MAX_RETRIES:
                _backoff_sleep(attempt)

        except (httpx.TimeoutException, httpx.ConnectError) as e:
            last_error = f"{type(e).__name__}: {e}"
            last_status = None
            if attempt < config.MAX_RETRIES:
                _backoff_sleep(attempt)

    return SubmitResult(success=False, status_code=last_status, error=last_error)


def _backoff_sleep(attempt: int) -> None:
    """Exponential backoff with jitter."""
    base = 2**attempt
    jitter = random.uniform(0, base * 0.5)
    time.sleep(base + jitter)
