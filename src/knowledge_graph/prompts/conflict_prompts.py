"""
Decision conflict classification prompt.
"""

from typing import Literal

from pydantic import BaseModel, Field

from ..models.decision import Decision

ConflictResultType = Literal['CONFLICT', 'SUPERSEDE', 'OVERLAP', 'NO_CONFLICT']


class ConflictClassification(BaseModel):
    """Relationship between an earlier and a later decision."""

    result: ConflictResultType = Field(
        ...,
        description='"CONFLICT" if the decisions directly contradict each other, '
        '"SUPERSEDE" if the later one looks like it replaces the earlier one without saying so, '
        '"OVERLAP" if they cover similar scope without contradicting, '
        '"NO_CONFLICT" if they are compatible or the later one explicitly replaces the earlier one.',
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description='Confidence in the result (0.0 to 1.0).')
    explanation: str = Field(..., max_length=300, description='One or two sentences explaining the result.')


CONFLICT_SYSTEM_PROMPT = """You review decisions recorded by a team and flag inconsistencies between them.

You are given two decisions in chronological order. Classify their relationship:
1. CONFLICT - their stated outcomes are opposed (e.g. choosing different tools for the same purpose)
2. SUPERSEDE - the later decision covers the same scope and probably replaces the earlier one, but never says so
3. OVERLAP - both address overlapping scope without contradicting each other
4. NO_CONFLICT - they are compatible, or the later decision explicitly replaces the earlier one

Be conservative: only use CONFLICT when both outcomes cannot hold at the same time."""


CONFLICT_USER_PROMPT_TEMPLATE = """<earlier_decision date="{a_date}" status="{a_status}">
Summary: {a_summary}
Context: {a_context}
</earlier_decision>

<later_decision date="{b_date}" status="{b_status}">
Summary: {b_summary}
Context: {b_context}
</later_decision>

<similarity_score>{similarity:.3f}</similarity_score>

Classify the relationship."""


def build_conflict_prompt(earlier: Decision, later: Decision, similarity: float) -> list[dict[str, str]]:
    user_prompt = CONFLICT_USER_PROMPT_TEMPLATE.format(
        a_date=earlier.effective_at.date().isoformat(),
        a_status=earlier.status.value,
        a_summary=earlier.summary,
        a_context=earlier.context or '(none)',
        b_date=later.effective_at.date().isoformat(),
        b_status=later.status.value,
        b_summary=later.summary,
        b_context=later.context or '(none)',
        similarity=similarity,
    )
    return [
        {'role': 'system', 'content': CONFLICT_SYSTEM_PROMPT},
        {'role': 'user', 'content': user_prompt},
    ]
