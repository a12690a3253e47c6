"""
External service clients for the content processing pipeline.
"""

from .diarization_client import DiarizationClient, Utterance
from .media_client import MediaClient, MediaPayload
from .openai_client import OpenAIClient
from .postgres_client import PostgresClient

__all__ = [
    'DiarizationClient',
    'MediaClient',
    'MediaPayload',
    'OpenAIClient',
    'PostgresClient',
    'Utterance',
]
