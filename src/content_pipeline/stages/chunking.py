"""
Deterministic transcript chunking.

Chunks are built from transcript segments when available (so each chunk
carries a time range and its speakers), otherwise from sentences. Adjacent
chunks share a small overlap of trailing units to keep context across the
boundary. The same input always yields the same chunks.
"""

import math
import re
from dataclasses import dataclass, field

from ..models.content_item import TranscriptSegment

DEFAULT_MAX_TOKENS = 500
DEFAULT_OVERLAP_TOKENS = 50

_SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+')


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


@dataclass(frozen=True)
class _Unit:
    text: str
    tokens: int
    start: float | None = None
    end: float | None = None
    speaker: str | None = None


@dataclass
class TextChunk:
    """A contiguous window of the transcript."""

    index: int
    text: str
    token_count: int
    start: float | None = None
    end: float | None = None
    speakers: list[str] = field(default_factory=list)


def _split_oversized(unit: _Unit, max_tokens: int) -> list[_Unit]:
    """Break a unit longer than ``max_tokens`` into word windows."""
    if unit.tokens <= max_tokens:
        return [unit]
    max_chars = max_tokens * 4
    pieces: list[_Unit] = []
    current: list[str] = []
    length = 0
    for word in unit.text.split():
        if current and length + len(word) + 1 > max_chars:
            text = ' '.join(current)
            pieces.append(_Unit(text, estimate_tokens(text), unit.start, unit.end, unit.speaker))
            current, length = [], 0
        current.append(word)
        length += len(word) + 1
    if current:
        text = ' '.join(current)
        pieces.append(_Unit(text, estimate_tokens(text), unit.start, unit.end, unit.speaker))
    return pieces


def _build_chunk(index: int, units: list[_Unit]) -> TextChunk:
    starts = [u.start for u in units if u.start is not None]
    ends = [u.end for u in units if u.end is not None]
    speakers = list(dict.fromkeys(u.speaker for u in units if u.speaker))
    text = ' '.join(u.text for u in units)
    return TextChunk(
        index=index,
        text=text,
        token_count=sum(u.tokens for u in units),
        start=min(starts) if starts else None,
        end=max(ends) if ends else None,
        speakers=speakers,
    )


def _window(units: list[_Unit], max_tokens: int, overlap_tokens: int) -> list[TextChunk]:
    chunks: list[TextChunk] = []
    current: list[_Unit] = []
    current_tokens = 0
    fresh = 0  # units added since the last emitted chunk

    for unit in units:
        if fresh and current_tokens + unit.tokens > max_tokens:
            chunks.append(_build_chunk(len(chunks), current))

            carried: list[_Unit] = []
            carried_tokens = 0
            for previous in reversed(current):
                if carried_tokens + previous.tokens > overlap_tokens:
                    break
                carried.insert(0, previous)
                carried_tokens += previous.tokens
            current, current_tokens, fresh = carried, carried_tokens, 0

        current.append(unit)
        current_tokens += unit.tokens
        fresh += 1

    if fresh:
        chunks.append(_build_chunk(len(chunks), current))
    return chunks


def chunk_transcript(
    transcript: str,
    segments: list[TranscriptSegment] | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> list[TextChunk]:
    """
    Split a transcript into overlapping chunks of at most ~``max_tokens``.

    Args:
        transcript: Full transcript / document text (used when no segments)
        segments: Timed segments; preferred when present
        max_tokens: Target upper bound per chunk
        overlap_tokens: Trailing tokens repeated at the start of the next chunk

    Returns:
        Chunks in transcript order, indexed from 0
    """
    if max_tokens < 1:
        raise ValueError('max_tokens must be positive')
    overlap_tokens = max(0, min(overlap_tokens, max_tokens - 1))

    if segments:
        units = [
            _Unit(s.text.strip(), estimate_tokens(s.text.strip()), s.start, s.end, s.speaker)
            for s in segments
            if s.text.strip()
        ]
    else:
        units = [_Unit(s, estimate_tokens(s)) for s in split_sentences(transcript or '')]

    units = [piece for unit in units for piece in _split_oversized(unit, max_tokens)]
    return _window(units, max_tokens, overlap_tokens)
