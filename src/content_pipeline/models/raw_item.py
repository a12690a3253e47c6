"""
Raw content handed to the pipeline by ingestion adapters.

The pipeline treats producers (upload handler, chat / wiki / code-host
webhooks, scheduled syncs) as opaque: they only have to produce a
RawContentItem.
"""

from typing import Any

from pydantic import BaseModel, Field, model_validator

from .content_item import SourceType


class RawContentItem(BaseModel):
    """Standardized payload from an ingestion adapter."""

    organization_id: str = Field(..., min_length=1)
    source_type: SourceType
    title: str = ''
    media_ref: str | None = Field(default=None, description='Downloadable media URL')
    text: str | None = Field(default=None, description='Already-textual content')
    external_id: str | None = None
    raw_payload_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def _require_content(self) -> 'RawContentItem':
        if not self.media_ref and not (self.text and self.text.strip()):
            raise ValueError('RawContentItem requires either media_ref or non-empty text')
        return self

    @property
    def participant_names(self) -> list[str]:
        """Participant names from metadata, used as transcription hints."""
        return list(self.metadata.get('participant_names', []))
