"""
Downloads media referenced by content items.

Classifies failures at the boundary: unsupported or oversized media is a
FatalInputError, network trouble is a TransientError.
"""

from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import urlparse

import httpx

from ..errors import FatalInputError, TransientError

# Formats accepted by the transcription model
SUPPORTED_EXTENSIONS = frozenset(
    {'.mp3', '.mp4', '.mpeg', '.mpga', '.m4a', '.wav', '.webm', '.ogg', '.flac'}
)

_CONTENT_TYPE_EXTENSIONS = {
    'video/mp4': '.mp4',
    'audio/mp4': '.m4a',
    'audio/x-m4a': '.m4a',
    'audio/mpeg': '.mp3',
    'audio/mp3': '.mp3',
    'video/mpeg': '.mpeg',
    'audio/wav': '.wav',
    'audio/x-wav': '.wav',
    'audio/webm': '.webm',
    'video/webm': '.webm',
    'audio/ogg': '.ogg',
    'audio/flac': '.flac',
}


@dataclass
class MediaPayload:
    """Downloaded media ready for transcription."""

    filename: str
    content: bytes
    content_type: str | None

    @property
    def size(self) -> int:
        return len(self.content)


def resolve_extension(url: str, content_type: str | None) -> str | None:
    """Pick the media extension from the URL path, falling back to the content type."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    if suffix in SUPPORTED_EXTENSIONS:
        return suffix
    if content_type:
        base = content_type.split(';')[0].strip().lower()
        return _CONTENT_TYPE_EXTENSIONS.get(base)
    return None


class MediaClient:
    """Async media downloader with size and format checks."""

    def __init__(
        self,
        max_bytes: int = 25 * 1024 * 1024,
        timeout_seconds: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self._client = http_client

    async def fetch(self, url: str) -> MediaPayload:
        """
        Download media from a URL.

        Raises:
            FatalInputError: unsupported format, oversized payload, 4xx response
            TransientError: timeout, connection failure, 5xx response
        """
        if not url.startswith(('http://', 'https://')):
            raise FatalInputError(
                'Media reference is not a downloadable URL',
                stage='transcription',
                context={'media_ref': url},
            )

        client = self._client or httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            async with client.stream('GET', url, follow_redirects=True) as response:
                if response.status_code >= 500 or response.status_code == 429:
                    raise TransientError(
                        f"Media host returned HTTP {response.status_code}",
                        stage='transcription',
                        context={'media_ref': url, 'status_code': response.status_code},
                    )
                if response.status_code >= 400:
                    raise FatalInputError(
                        f"Media not retrievable (HTTP {response.status_code})",
                        stage='transcription',
                        context={'media_ref': url, 'status_code': response.status_code},
                    )

                content_type = response.headers.get('content-type')
                extension = resolve_extension(url, content_type)
                if extension is None:
                    raise FatalInputError(
                        'Unsupported media format',
                        stage='transcription',
                        context={'media_ref': url, 'content_type': content_type},
                    )

                declared = response.headers.get('content-length')
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise FatalInputError(
                        'Media exceeds the transcription size limit',
                        stage='transcription',
                        context={'media_ref': url, 'bytes': int(declared), 'limit': self.max_bytes},
                    )

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise FatalInputError(
                            'Media exceeds the transcription size limit',
                            stage='transcription',
                            context={'media_ref': url, 'limit': self.max_bytes},
                        )
                    chunks.append(chunk)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientError(
                f"Media download failed: {type(e).__name__}",
                stage='transcription',
                context={'media_ref': url},
            ) from e
        finally:
            if self._client is None:
                await client.aclose()

        return MediaPayload(
            filename=f"media{extension}",
            content=b''.join(chunks),
            content_type=content_type,
        )
