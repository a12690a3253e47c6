"""
AssemblyAI speaker diarization client.

Submits a media URL with ``speaker_labels`` enabled, polls until the job
finishes and returns speaker utterances in seconds.
"""

import asyncio
import os
from dataclasses import dataclass

import httpx
import structlog

from ..errors import FatalInputError, TransientError

logger = structlog.get_logger(__name__)

ASSEMBLYAI_API_URL = 'https://api.assemblyai.com/v2'


@dataclass
class Utterance:
    """One speaker turn reported by the diarization provider."""

    speaker: str
    start: float
    end: float
    text: str
    confidence: float | None = None


class DiarizationClient:
    """Async AssemblyAI client (REST over httpx)."""

    def __init__(
        self,
        api_key: str | None = None,
        poll_interval_seconds: float = 3.0,
        max_poll_attempts: int = 200,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or os.getenv('ASSEMBLYAI_API_KEY', '')
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self._client = http_client or httpx.AsyncClient(
            base_url=ASSEMBLYAI_API_URL, timeout=30.0
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def diarize(self, audio_url: str, speakers_expected: int | None = None) -> list[Utterance]:
        """
        Run speaker-labelled transcription and return utterances.

        Raises:
            FatalInputError: the provider rejected the media
            TransientError: network failure, 5xx, or polling timed out
        """
        transcript_id = await self._submit(audio_url, speakers_expected)
        logger.debug('diarization.submitted', transcript_id=transcript_id)

        for _ in range(self.max_poll_attempts):
            data = await self._request('GET', f'/transcript/{transcript_id}')
            status = data.get('status')
            if status == 'completed':
                return [
                    Utterance(
                        speaker=str(u['speaker']),
                        start=u['start'] / 1000.0,
                        end=u['end'] / 1000.0,
                        text=u.get('text', ''),
                        confidence=u.get('confidence'),
                    )
                    for u in data.get('utterances') or []
                ]
            if status == 'error':
                raise FatalInputError(
                    data.get('error') or 'Diarization failed',
                    stage='diarization',
                    context={'transcript_id': transcript_id},
                )
            await asyncio.sleep(self.poll_interval_seconds)

        raise TransientError(
            'Diarization timed out waiting for the provider',
            stage='diarization',
            context={'transcript_id': transcript_id, 'polls': self.max_poll_attempts},
        )

    async def _submit(self, audio_url: str, speakers_expected: int | None) -> str:
        body: dict[str, object] = {
            'audio_url': audio_url,
            'speaker_labels': True,
            'punctuate': True,
            'format_text': True,
        }
        if speakers_expected:
            body['speakers_expected'] = speakers_expected
        data = await self._request('POST', '/transcript', json=body)
        return str(data['id'])

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(
                method, path, headers={'Authorization': self.api_key}, **kwargs
            )
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientError(
                f"AssemblyAI request failed: {type(e).__name__}", stage='diarization'
            ) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(
                f"AssemblyAI returned HTTP {response.status_code}",
                stage='diarization',
                context={'status_code': response.status_code},
            )
        if response.status_code >= 400:
            raise FatalInputError(
                f"AssemblyAI rejected the request (HTTP {response.status_code})",
                stage='diarization',
                context={'status_code': response.status_code, 'body': response.text[:500]},
            )
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()
