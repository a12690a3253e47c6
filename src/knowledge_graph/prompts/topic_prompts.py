"""
Topic naming prompt.

Uses OpenAI structured output; the builder falls back to a keyword-derived
name whenever this call fails.
"""

from pydantic import BaseModel, Field

MAX_TITLES = 5


class TopicName(BaseModel):
    """Generated name for a cluster of content items."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=60,
        description='Short topic name of 2-4 words, title case, no trailing punctuation.',
    )
    description: str = Field(
        default='',
        max_length=300,
        description='One sentence describing what the grouped content has in common.',
    )


TOPIC_NAME_SYSTEM_PROMPT = """You name clusters of related workplace content (meeting recordings, chat threads, documents, issues).

Given the titles of a few items in the cluster and the tags they share, produce:
- a short topic name (2-4 words) that a teammate would recognise
- a one-sentence description of the common subject

Prefer concrete project or subject names over generic words like "Discussion" or "Updates"."""


TOPIC_NAME_USER_PROMPT_TEMPLATE = """Titles:
{titles}

Shared tags: {tags}

Name this topic."""


def build_topic_name_prompt(titles: list[str], tags: list[str]) -> list[dict[str, str]]:
    """
    Build the topic naming messages.

    Args:
        titles: Member titles; only the first MAX_TITLES non-empty ones are used
        tags: Tags common to the cluster

    Returns:
        List of message dicts for OpenAI chat completion
    """
    shown = [t for t in titles if t.strip()][:MAX_TITLES]
    user_prompt = TOPIC_NAME_USER_PROMPT_TEMPLATE.format(
        titles='\n'.join(f"- {t}" for t in shown) or '(untitled)',
        tags=', '.join(tags) or '(none)',
    )
    return [
        {'role': 'system', 'content': TOPIC_NAME_SYSTEM_PROMPT},
        {'role': 'user', 'content': user_prompt},
    ]
