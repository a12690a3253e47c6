"""
Configuration management for the content processing pipeline.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


class Config:
    """Configuration settings loaded from environment."""

    # OpenAI
    OPENAI_API_KEY: str = os.getenv('OPENAI_API_KEY', '')
    OPENAI_CHAT_MODEL: str = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')
    OPENAI_EMBEDDING_MODEL: str = os.getenv('OPENAI_EMBEDDING_MODEL', 'text-embedding-3-small')
    OPENAI_EMBEDDING_DIMENSIONS: int = int(os.getenv('OPENAI_EMBEDDING_DIMENSIONS', '1536'))
    OPENAI_TRANSCRIPTION_MODEL: str = os.getenv('OPENAI_TRANSCRIPTION_MODEL', 'whisper-1')

    # Speaker diarization (AssemblyAI)
    ASSEMBLYAI_API_KEY: str = os.getenv('ASSEMBLYAI_API_KEY', '')

    # Storage
    DATABASE_URL: str = os.getenv('DATABASE_URL', '')
    NEO4J_URI: str = os.getenv('NEO4J_URI', '')
    NEO4J_USERNAME: str = os.getenv('NEO4J_USERNAME', 'neo4j')
    NEO4J_PASSWORD: str = os.getenv('NEO4J_PASSWORD', '')
    NEO4J_DATABASE: str = os.getenv('NEO4J_DATABASE', 'neo4j')

    # Stage retry policy
    STAGE_MAX_ATTEMPTS: int = int(os.getenv('STAGE_MAX_ATTEMPTS', '3'))
    STAGE_BACKOFF_MAX_SECONDS: float = float(os.getenv('STAGE_BACKOFF_MAX_SECONDS', '10'))

    # Embedding / chunking
    EMBEDDING_CHUNK_MAX_TOKENS: int = int(os.getenv('EMBEDDING_CHUNK_MAX_TOKENS', '500'))
    EMBEDDING_CHUNK_OVERLAP_TOKENS: int = int(os.getenv('EMBEDDING_CHUNK_OVERLAP_TOKENS', '50'))
    EMBEDDING_FANOUT: int = int(os.getenv('EMBEDDING_FANOUT', '10'))

    # Search
    SEARCH_DEFAULT_THRESHOLD: float = float(os.getenv('SEARCH_DEFAULT_THRESHOLD', '0.7'))

    # Workers
    WORKER_CONCURRENCY: int = int(os.getenv('WORKER_CONCURRENCY', '4'))
    MAX_MEDIA_BYTES: int = int(os.getenv('MAX_MEDIA_BYTES', str(25 * 1024 * 1024)))

    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate that required configuration is present.

        Returns:
            List of missing required configuration keys
        """
        missing = []
        if not cls.OPENAI_API_KEY:
            missing.append('OPENAI_API_KEY')
        if not cls.DATABASE_URL:
            missing.append('DATABASE_URL')
        if not cls.NEO4J_URI:
            missing.append('NEO4J_URI')
        if not cls.NEO4J_PASSWORD:
            missing.append('NEO4J_PASSWORD')
        return missing


# Singleton config instance
config = Config()
