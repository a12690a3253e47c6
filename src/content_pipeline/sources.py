"""
Ingestion adapters.

Every source (chat, wiki, code host, video upload) implements the same
``RawItemSource`` protocol: given a reference, produce a RawContentItem.
Provider payloads are handed over as plain dicts by a ``PayloadStore``; the
adapters only normalize them into text (or a media reference) plus metadata.

``ingest`` turns a RawContentItem into a pending ContentItem.
"""

import re
from typing import Any, Protocol

import structlog

from .errors import ValidationError
from .models.content_item import ContentItem, SourceType
from .models.raw_item import RawContentItem
from .repository import ContentItemRepository

logger = structlog.get_logger(__name__)

TITLE_PREVIEW_CHARS = 50
MAX_REVIEW_COMMENTS = 10


class PayloadStore(Protocol):
    """Where raw provider payloads are kept until they are normalized."""

    async def load(self, ref: str) -> dict[str, Any]:
        """Return the raw payload for ``ref``; raise ValidationError if unknown."""
        ...


class InMemoryPayloadStore:
    def __init__(self, payloads: dict[str, dict[str, Any]] | None = None):
        self._payloads = dict(payloads or {})

    def put(self, ref: str, payload: dict[str, Any]) -> None:
        self._payloads[ref] = payload

    async def load(self, ref: str) -> dict[str, Any]:
        if ref not in self._payloads:
            raise ValidationError('Unknown raw payload reference', context={'ref': ref})
        return self._payloads[ref]


class RawItemSource(Protocol):
    """Opaque producer of raw content items."""

    source_type: SourceType

    async def fetch_raw_item(self, ref: str) -> RawContentItem:
        ...


def _preview(text: str, limit: int = TITLE_PREVIEW_CHARS) -> str:
    text = ' '.join(text.split())
    return text[:limit] + ('...' if len(text) > limit else '')


# =============================================================================
# Slack
# =============================================================================


def slack_thread_to_text(messages: list[dict[str, Any]], users: dict[str, str]) -> str:
    """One ``author: text`` line per message, in posting order."""
    lines = []
    for message in sorted(messages, key=lambda m: float(m.get('ts', 0))):
        text = (message.get('text') or '').strip()
        if not text:
            continue
        author_id = message.get('user') or message.get('bot_id') or 'unknown'
        lines.append(f"{users.get(author_id, author_id)}: {text}")
    return '\n'.join(lines)


class SlackThreadSource:
    """
    Slack threads. Payload shape::

        {"organization_id", "channel": {"id", "name"}, "users": {id: name},
         "messages": [{"ts", "user", "text"}, ...]}
    """

    source_type = SourceType.SLACK

    def __init__(self, payloads: PayloadStore):
        self.payloads = payloads

    async def fetch_raw_item(self, ref: str) -> RawContentItem:
        payload = await self.payloads.load(ref)
        messages = payload.get('messages') or []
        if not messages:
            raise ValidationError('Slack thread has no messages', context={'ref': ref})

        users = payload.get('users') or {}
        channel = payload.get('channel') or {}
        parent = min(messages, key=lambda m: float(m.get('ts', 0)))
        parent_author = users.get(parent.get('user'), parent.get('user') or 'Unknown')
        replies = len(messages) - 1

        title = f"{parent_author} in #{channel.get('name', 'unknown')}: {_preview(parent.get('text') or 'Discussion')}"
        if replies:
            title += f" ({replies} replies)"

        participants = sorted({users.get(m.get('user'), m.get('user')) for m in messages if m.get('user')})
        return RawContentItem(
            organization_id=payload['organization_id'],
            source_type=self.source_type,
            title=title,
            text=slack_thread_to_text(messages, users),
            external_id=f"{channel.get('id', 'unknown')}:{parent.get('ts')}",
            raw_payload_ref=ref,
            metadata={
                'channel_id': channel.get('id'),
                'channel_name': channel.get('name'),
                'reply_count': replies,
                'participant_names': participants,
            },
        )


# =============================================================================
# Notion
# =============================================================================

_NOTION_PREFIXES = {
    'heading_1': '# ',
    'heading_2': '## ',
    'heading_3': '### ',
    'bulleted_list_item': '- ',
    'numbered_list_item': '1. ',
    'quote': '> ',
}


def notion_block_to_text(block: dict[str, Any]) -> str:
    block_type = block.get('type', 'paragraph')
    body = block.get(block_type) or {}
    text = ''.join(part.get('plain_text', '') for part in body.get('rich_text', []))
    if block_type == 'to_do':
        return f"[{'x' if body.get('checked') else ' '}] {text}"
    if block_type == 'code':
        return f"```{body.get('language', '')}\n{text}\n```"
    if block_type == 'divider':
        return '---'
    return _NOTION_PREFIXES.get(block_type, '') + text


class NotionPageSource:
    """
    Notion pages. Payload shape::

        {"organization_id", "page": {"id", "title", "url"}, "blocks": [...]}
    """

    source_type = SourceType.NOTION

    def __init__(self, payloads: PayloadStore):
        self.payloads = payloads

    async def fetch_raw_item(self, ref: str) -> RawContentItem:
        payload = await self.payloads.load(ref)
        page = payload.get('page') or {}
        lines = [notion_block_to_text(b) for b in payload.get('blocks') or []]
        text = '\n'.join(line for line in lines if line.strip())
        if not text.strip():
            raise ValidationError('Notion page has no text content', context={'ref': ref})

        return RawContentItem(
            organization_id=payload['organization_id'],
            source_type=self.source_type,
            title=page.get('title') or 'Untitled',
            text=text,
            external_id=page.get('id'),
            raw_payload_ref=ref,
            metadata={'url': page.get('url')},
        )


# =============================================================================
# GitHub
# =============================================================================

_ISSUE_REFERENCE = re.compile(r'#(\d+)')


def extract_issue_references(text: str) -> list[int]:
    """Issue numbers referenced as ``#123`` (also covers ``closes #123``)."""
    return sorted({int(n) for n in _ISSUE_REFERENCE.findall(text or '')})


class GitHubIssueSource:
    """
    GitHub issues and pull requests. Payload shape::

        {"organization_id", "repo", "kind": "issue"|"pull_request",
         "number", "title", "body", "author", "labels": [...],
         "comments": [{"author", "body", "path"?}]}
    """

    source_type = SourceType.GITHUB

    def __init__(self, payloads: PayloadStore):
        self.payloads = payloads

    async def fetch_raw_item(self, ref: str) -> RawContentItem:
        payload = await self.payloads.load(ref)
        kind = payload.get('kind', 'issue')
        number = payload['number']
        title = payload.get('title', '')
        body = payload.get('body') or '_No description provided_'
        comments = payload.get('comments') or []
        if kind == 'pull_request':
            comments = comments[:MAX_REVIEW_COMMENTS]

        sections = [f"# {title}", '', body]
        if comments:
            sections += ['', '## Comments']
            for comment in comments:
                location = f" on `{comment['path']}`" if comment.get('path') else ''
                sections.append(f"**{comment.get('author', 'unknown')}**{location}:")
                sections.append(f"> {comment.get('body', '')}")

        label = 'PR' if kind == 'pull_request' else 'Issue'
        authors = {payload.get('author')} | {c.get('author') for c in comments}
        return RawContentItem(
            organization_id=payload['organization_id'],
            source_type=self.source_type,
            title=f"{label} #{number}: {title}",
            text='\n'.join(sections),
            external_id=f"{payload.get('repo')}#{number}",
            raw_payload_ref=ref,
            metadata={
                'repo': payload.get('repo'),
                'kind': kind,
                'number': number,
                'labels': payload.get('labels') or [],
                'linked_issues': [n for n in extract_issue_references(body) if n != number],
                'participant_names': sorted(a for a in authors if a),
            },
        )


# =============================================================================
# Video / upload
# =============================================================================


class VideoSource:
    """
    Uploaded or recorded media. Payload shape::

        {"organization_id", "title", "media_url", "participant_names"?,
         "vocabulary"?, "speaker_count"?, "transcript"?}

    An externally supplied transcript is passed through as text, which lets
    the orchestrator skip transcription.
    """

    def __init__(self, payloads: PayloadStore, source_type: SourceType = SourceType.VIDEO):
        if not source_type.is_media:
            raise ValueError(f"{source_type.value} is not a media source")
        self.payloads = payloads
        self.source_type = source_type

    async def fetch_raw_item(self, ref: str) -> RawContentItem:
        payload = await self.payloads.load(ref)
        metadata = {
            key: payload[key]
            for key in ('participant_names', 'vocabulary', 'speaker_count', 'diarization_enabled')
            if key in payload
        }
        return RawContentItem(
            organization_id=payload['organization_id'],
            source_type=self.source_type,
            title=payload.get('title') or 'Untitled recording',
            media_ref=payload.get('media_url'),
            text=payload.get('transcript'),
            external_id=payload.get('external_id'),
            raw_payload_ref=ref,
            metadata=metadata,
        )


class SourceRegistry:
    """Adapter lookup by source type."""

    def __init__(self, sources: list[RawItemSource] | None = None):
        self._sources: dict[SourceType, RawItemSource] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: RawItemSource) -> None:
        self._sources[source.source_type] = source

    def get(self, source_type: SourceType) -> RawItemSource:
        if source_type not in self._sources:
            raise ValidationError(
                'No adapter registered for source type', context={'source_type': source_type.value}
            )
        return self._sources[source_type]

    async def fetch_raw_item(self, source_type: SourceType, ref: str) -> RawContentItem:
        return await self.get(source_type).fetch_raw_item(ref)


def to_content_item(raw: RawContentItem) -> ContentItem:
    """
    Build a pending ContentItem.

    Text is stored as the transcript so processing starts at analysis.
    """
    return ContentItem(
        organization_id=raw.organization_id,
        source_type=raw.source_type,
        external_id=raw.external_id,
        title=raw.title,
        raw_payload_ref=raw.raw_payload_ref,
        media_ref=raw.media_ref,
        metadata=dict(raw.metadata),
        transcript=raw.text.strip() if raw.text and raw.text.strip() else None,
    )


async def ingest(raw: RawContentItem, repository: ContentItemRepository) -> ContentItem:
    item = await repository.create(to_content_item(raw))
    logger.info(
        'sources.ingested',
        content_item_id=item.id,
        organization_id=item.organization_id,
        source_type=item.source_type.value,
        has_transcript=item.has_transcript,
    )
    return item
