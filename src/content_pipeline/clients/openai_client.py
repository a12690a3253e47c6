"""
OpenAI client wrapper for the content processing pipeline.

Handles:
- Chat completions with structured output (Pydantic model parsing)
- Embeddings generation (single and batch)
- Audio transcription (Whisper, verbose_json segments)
- Retry logic with exponential backoff
"""

import os
from typing import Any, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from ..errors import OpenAIModelError, wrap_openai_error

# Type variable for structured output parsing
T = TypeVar('T', bound=BaseModel)


class OpenAIClient:
    """
    Async OpenAI client with structured output, embedding and transcription support.

    Configuration via environment variables:
    - OPENAI_API_KEY: Required API key
    - OPENAI_CHAT_MODEL: Chat model (default: gpt-4.1-mini)
    - OPENAI_EMBEDDING_MODEL: Embedding model (default: text-embedding-3-small)
    - OPENAI_EMBEDDING_DIMENSIONS: Embedding dimensions (default: 1536)
    - OPENAI_TRANSCRIPTION_MODEL: Transcription model (default: whisper-1)
    """

    def __init__(
        self,
        api_key: str | None = None,
        chat_model: str | None = None,
        embedding_model: str | None = None,
        embedding_dimensions: int | None = None,
        transcription_model: str | None = None,
    ):
        """
        Initialize the OpenAI client.

        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY env var)
            chat_model: Model for chat completions (defaults to OPENAI_CHAT_MODEL or gpt-4.1-mini)
            embedding_model: Model for embeddings (defaults to OPENAI_EMBEDDING_MODEL or text-embedding-3-small)
            embedding_dimensions: Embedding vector dimensions (defaults to OPENAI_EMBEDDING_DIMENSIONS or 1536)
            transcription_model: Audio model (defaults to OPENAI_TRANSCRIPTION_MODEL or whisper-1)
        """
        self.api_key = api_key or os.getenv('OPENAI_API_KEY')
        if not self.api_key:
            raise ValueError('OPENAI_API_KEY environment variable is required')

        self.chat_model = chat_model or os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')
        self.embedding_model = embedding_model or os.getenv(
            'OPENAI_EMBEDDING_MODEL', 'text-embedding-3-small'
        )
        self.embedding_dimensions = embedding_dimensions or int(
            os.getenv('OPENAI_EMBEDDING_DIMENSIONS', '1536')
        )
        self.transcription_model = transcription_model or os.getenv(
            'OPENAI_TRANSCRIPTION_MODEL', 'whisper-1'
        )

        self._client = AsyncOpenAI(api_key=self.api_key)

    async def chat_completion_structured(
        self,
        messages: list[dict[str, str]],
        response_model: type[T],
        model: str | None = None,
        temperature: float = 0.0,
    ) -> T:
        """
        Get a chat completion with structured output (Pydantic model).

        Uses OpenAI's native structured output via response_format. Not
        retried here: stage-level retry policy decides what is retryable.

        Args:
            messages: List of message dicts with 'role' and 'content'
            response_model: Pydantic model class for the response
            model: Override the default chat model
            temperature: Sampling temperature

        Returns:
            Parsed Pydantic model instance

        Raises:
            OpenAIError: the API call failed (provider exception as __cause__)
            OpenAIModelError: the model refused or returned nothing parsable
        """
        try:
            response = await self._client.beta.chat.completions.parse(
                model=model or self.chat_model,
                messages=messages,  # type: ignore
                response_format=response_model,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            raise wrap_openai_error(e, {'model': model or self.chat_model}) from e

        message = response.choices[0].message
        if message.parsed is None:
            raise OpenAIModelError(
                'Failed to parse structured response',
                context={
                    'model': model or self.chat_model,
                    'response_model': response_model.__name__,
                    'refusal': getattr(message, 'refusal', None),
                },
            )
        return message.parsed

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def create_embedding(self, text: str) -> list[float]:
        """
        Create an embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats
        """
        # Clean the text - remove newlines, extra whitespace
        cleaned_text = ' '.join(text.split())

        response = await self._client.embeddings.create(
            model=self.embedding_model,
            input=cleaned_text,
            dimensions=self.embedding_dimensions,
        )
        return response.data[0].embedding

    async def create_embeddings_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Create embeddings for multiple texts in a single API call.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors (same order as input)
        """
        if not texts:
            return []

        cleaned_texts = [' '.join(t.split()) for t in texts]

        try:
            response = await self._client.embeddings.create(
                model=self.embedding_model,
                input=cleaned_texts,
                dimensions=self.embedding_dimensions,
            )
        except openai.OpenAIError as e:
            raise wrap_openai_error(e, {'model': self.embedding_model, 'batch_size': len(texts)}) from e

        # Sort by index to ensure order matches input
        sorted_embeddings = sorted(response.data, key=lambda x: x.index)
        return [e.embedding for e in sorted_embeddings]

    async def transcribe_audio(
        self,
        filename: str,
        content: bytes,
        prompt: str | None = None,
    ) -> dict[str, Any]:
        """
        Transcribe an audio/video payload with Whisper.

        Args:
            filename: Name with an extension Whisper recognizes (e.g. video.mp4)
            content: Raw media bytes
            prompt: Optional vocabulary / participant hint

        Returns:
            Dict with 'text', 'duration' and 'segments' (start, end, text)
        """
        kwargs: dict[str, Any] = {
            'model': self.transcription_model,
            'file': (filename, content),
            'response_format': 'verbose_json',
        }
        if prompt:
            kwargs['prompt'] = prompt

        try:
            response = await self._client.audio.transcriptions.create(**kwargs)
        except openai.OpenAIError as e:
            raise wrap_openai_error(e, {'model': self.transcription_model, 'bytes': len(content)}) from e

        segments = [
            {'start': float(s.start), 'end': float(s.end), 'text': s.text.strip()}
            for s in (response.segments or [])
        ]
        return {
            'text': response.text,
            'duration': getattr(response, 'duration', None),
            'segments': segments,
        }

    async def health_check(self) -> dict[str, bool | str]:
        """
        Verify API connectivity with a minimal request.

        Returns:
            Dict with 'healthy' bool and optional 'error' message
        """
        try:
            await self._client.embeddings.create(
                model=self.embedding_model,
                input='health check',
                dimensions=self.embedding_dimensions,
            )
            return {
                'healthy': True,
                'chat_model': self.chat_model,
                'embedding_model': self.embedding_model,
                'embedding_dimensions': self.embedding_dimensions,
            }
        except Exception as e:
            return {'healthy': False, 'error': str(e)}

    async def close(self):
        """Close the client connection."""
        await self._client.close()
