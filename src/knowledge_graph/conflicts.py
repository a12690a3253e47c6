"""
Decision conflict detection.

Pairwise comparison of an organization's recent active decisions, bounded
by an embedding similarity floor so only related decisions are classified.

Pipeline:
1. Load the most recent active decisions (default 50)
2. Look up their stored embeddings; embed any that are missing
3. Keep pairs with cosine similarity >= floor (default 0.75)
4. Classify each pair (heuristic, or LLM with heuristic fallback)
5. Sort by confidence desc, then by decision ids

Pairs are always oriented earlier -> later, so running detection twice on an
unchanged decision set returns identical results.
"""

import hashlib
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from content_pipeline.clients.openai_client import OpenAIClient
from content_pipeline.embedding_index import EmbeddingIndex
from content_pipeline.logging import get_logger
from content_pipeline.models.embedding import OwnerType
from content_pipeline.similarity import similarity_matrix

from .errors import ConflictDetectionError
from .models import (
    ACTIVE_DECISION_STATUSES,
    ConflictType,
    Decision,
    DecisionConflict,
    DecisionStatus,
)
from .prompts.conflict_prompts import ConflictClassification, build_conflict_prompt
from .repository import KnowledgeGraphRepository

logger = get_logger(__name__)

Embedder = Callable[[list[str]], Awaitable[list[list[float]]]]


@dataclass
class PairClassification:
    conflict_type: ConflictType
    confidence: float
    explanation: str


class ConflictClassifier(Protocol):
    name: str

    async def classify(
        self, earlier: Decision, later: Decision, similarity: float
    ) -> PairClassification | None:
        """None when the pair is compatible."""
        ...


# =============================================================================
# Heuristic classifier
# =============================================================================

_WORD = re.compile(r"[a-z0-9][a-z0-9+#.\-]*")

_STOPWORDS = frozenset(
    """a about after all also an and any are as at be been before being but by can could
    decided decide decision did do does for from going had has have i in into is it its
    let's lets made make of on or our ours shall should so that the their them then there
    these they this those to us use using was we were will with would""".split()
)

_NEGATIONS = frozenset({'not', 'never', 'avoid', 'stop', 'against', 'drop', 'without'})

# A later decision using one of these replaces whatever the following words name
_SUPERSEDE_MARKERS = (
    'instead of',
    'replacing',
    'replaces',
    'replace ',
    'no longer',
    'supersedes',
    'superseding',
    'switch from',
    'switching from',
    'moving away from',
    'migrate away from',
    'reverse the decision',
    'reversing',
)

# Verbs introducing the chosen option: "use X", "go with X", "adopt X"
# The replaced thing ends at the first clause break
_CLAUSE_END = re.compile(r"[.;:!?,](?:\s|$)")

_CHOICE = re.compile(
    r"\b(?:use|using|adopt|adopting|choose|chose|chosen|pick|picked|go with|going with|"
    r"standardi[sz]e on|switch to|migrate to|move to|build (?:on|with)|select|selected|prefer)\s+"
    r"([a-z0-9][a-z0-9+#.\-]*(?:\s+[a-z0-9][a-z0-9+#.\-]*)?)"
)

# Words that end the chosen option and start its scope
_SCOPE_BREAK = frozenset({'for', 'as', 'in', 'on', 'to', 'with', 'across', 'at', 'from', 'instead'})


def _text(decision: Decision) -> str:
    return f"{decision.summary}. {decision.context}".lower()


def content_words(text: str) -> set[str]:
    return {w.strip('.-') for w in _WORD.findall(text.lower())} - _STOPWORDS - {''}


def chosen_option(text: str) -> str | None:
    """The option a decision picks, e.g. ``postgres`` in "use Postgres for storage"."""
    match = _CHOICE.search(text.lower())
    if not match:
        return None
    words = []
    for word in match.group(1).split():
        word = word.strip('.,')
        if word in _SCOPE_BREAK or word in _STOPWORDS:
            break
        words.append(word)
    return ' '.join(words) or None


def replaces_earlier(earlier_text: str, later_text: str) -> bool:
    """
    True when the later text explicitly replaces the earlier decision.

    A supersession marker only counts when the words after it name the
    earlier decision: its chosen option when it has one, otherwise one of its
    content words. "Instead of Postgres" replaces "use Postgres for storage";
    "replacing the Redis cache" does not.
    """
    option = chosen_option(earlier_text)
    targets = set(option.split()) if option else content_words(earlier_text)
    if not targets:
        return False
    for marker in _SUPERSEDE_MARKERS:
        start = later_text.find(marker)
        while start != -1:
            tail = later_text[start + len(marker):]
            tail = _CLAUSE_END.split(tail, maxsplit=1)[0]
            if content_words(tail) & targets:
                return True
            start = later_text.find(marker, start + 1)
    return False


def _negated(text: str) -> bool:
    tokens = set(_WORD.findall(text.lower()))
    return bool(tokens & _NEGATIONS) or "n't " in text.lower()


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class HeuristicConflictClassifier:
    """
    Deterministic rule-based classifier.

    - later decision explicitly replaces the earlier one: compatible
    - different chosen options over shared scope: direct_contradiction
    - same scope with opposite polarity (one negated): direct_contradiction
    - later firm decision from another item on shared scope: supersession_unclear
    - otherwise: scope_overlap
    """

    name = 'heuristic'

    async def classify(
        self, earlier: Decision, later: Decision, similarity: float
    ) -> PairClassification | None:
        return self.classify_sync(earlier, later, similarity)

    def classify_sync(
        self, earlier: Decision, later: Decision, similarity: float
    ) -> PairClassification | None:
        earlier_text, later_text = _text(earlier), _text(later)
        if replaces_earlier(earlier_text, later_text):
            return None

        option_a, option_b = chosen_option(earlier_text), chosen_option(later_text)
        words_a, words_b = content_words(earlier_text), content_words(later_text)

        if option_a and option_b and option_a != option_b:
            scope_a = words_a - set(option_a.split())
            scope_b = words_b - set(option_b.split())
            shared = sorted(scope_a & scope_b)
            if shared:
                confidence = min(0.95, 0.55 + 0.4 * similarity)
                return PairClassification(
                    ConflictType.DIRECT_CONTRADICTION,
                    round(confidence, 4),
                    f'Earlier decision chose "{option_a}" and later decision chose "{option_b}" '
                    f"for the same scope ({', '.join(shared[:3])}).",
                )

        if _negated(earlier_text) != _negated(later_text) and _jaccard(words_a, words_b) >= 0.3:
            confidence = min(0.9, 0.5 + 0.4 * similarity)
            return PairClassification(
                ConflictType.DIRECT_CONTRADICTION,
                round(confidence, 4),
                'One decision rules out what the other commits to.',
            )

        firm = {DecisionStatus.DECIDED, DecisionStatus.IMPLEMENTED}
        if (
            earlier.status in firm
            and later.status in firm
            and later.effective_at > earlier.effective_at
            and earlier.content_item_id != later.content_item_id
        ):
            return PairClassification(
                ConflictType.SUPERSESSION_UNCLEAR,
                round(0.8 * similarity, 4),
                'A later decision covers the same scope without saying whether it replaces the earlier one.',
            )

        return PairClassification(
            ConflictType.SCOPE_OVERLAP,
            round(0.6 * similarity, 4),
            'Both decisions address overlapping scope.',
        )


# =============================================================================
# LLM classifier
# =============================================================================

_RESULT_TYPES = {
    'CONFLICT': ConflictType.DIRECT_CONTRADICTION,
    'SUPERSEDE': ConflictType.SUPERSESSION_UNCLEAR,
    'OVERLAP': ConflictType.SCOPE_OVERLAP,
}


class LLMConflictClassifier:
    """OpenAI structured-output classifier; falls back to the heuristic on any failure."""

    name = 'llm'

    def __init__(self, openai: OpenAIClient, fallback: HeuristicConflictClassifier | None = None):
        self.openai = openai
        self.fallback = fallback or HeuristicConflictClassifier()

    async def classify(
        self, earlier: Decision, later: Decision, similarity: float
    ) -> PairClassification | None:
        try:
            result = await self.openai.chat_completion_structured(
                messages=build_conflict_prompt(earlier, later, similarity),
                response_model=ConflictClassification,
                temperature=0.0,
            )
        except Exception as e:
            logger.warning(
                'knowledge_graph.conflict_llm_failed',
                decision_a_id=earlier.id,
                decision_b_id=later.id,
                error=str(e),
            )
            return self.fallback.classify_sync(earlier, later, similarity)

        if result.result == 'NO_CONFLICT':
            return None
        return PairClassification(_RESULT_TYPES[result.result], result.confidence, result.explanation)


# =============================================================================
# Detector
# =============================================================================


def decision_fingerprint(decisions: list[Decision], classifier: str) -> str:
    """Changes whenever a decision is added, removed or updated."""
    digest = hashlib.sha256(classifier.encode())
    for d in sorted(decisions, key=lambda d: d.id):
        digest.update(f"|{d.id}:{d.updated_at.isoformat()}:{d.status.value}".encode())
    return digest.hexdigest()


class ConflictDetector:
    """
    DetectConflicts for an organization.

    By default every call recomputes from the current decisions. With
    ``cache_results`` the last result per organization is reused while the
    decision fingerprint is unchanged.
    """

    SIMILARITY_FLOOR = 0.75
    MAX_DECISIONS = 50

    def __init__(
        self,
        repository: KnowledgeGraphRepository,
        index: EmbeddingIndex,
        classifier: ConflictClassifier | None = None,
        embedder: Embedder | None = None,
        similarity_floor: float | None = None,
        max_decisions: int | None = None,
        cache_results: bool = False,
    ):
        """
        Args:
            repository: Decision store
            index: Embedding index holding decision embeddings
            classifier: Pair classifier (default: HeuristicConflictClassifier)
            embedder: Batch embedder for decisions without stored embeddings;
                      such decisions are skipped when None
            similarity_floor: Minimum cosine similarity for a pair to be classified
            max_decisions: How many recent decisions to compare
            cache_results: Reuse results while the decision set is unchanged
        """
        self.repository = repository
        self.index = index
        self.classifier = classifier or HeuristicConflictClassifier()
        self.embedder = embedder
        self.similarity_floor = similarity_floor if similarity_floor is not None else self.SIMILARITY_FLOOR
        self.max_decisions = max_decisions or self.MAX_DECISIONS
        self.cache_results = cache_results
        self._cache: dict[str, tuple[str, list[DecisionConflict]]] = {}

    async def detect(self, organization_id: str) -> list[DecisionConflict]:
        decisions = await self.repository.list_decisions(
            organization_id, statuses=ACTIVE_DECISION_STATUSES, limit=self.max_decisions
        )
        if len(decisions) < 2:
            return []

        fingerprint = decision_fingerprint(decisions, self.classifier.name)
        if self.cache_results:
            cached = self._cache.get(organization_id)
            if cached is not None and cached[0] == fingerprint:
                logger.debug('knowledge_graph.conflicts_cache_hit', organization_id=organization_id)
                return [c.model_copy() for c in cached[1]]

        ordered, vectors = await self._vectors(decisions)
        conflicts = await self._compare(organization_id, ordered, vectors)

        if self.cache_results:
            self._cache[organization_id] = (fingerprint, conflicts)

        logger.info(
            'knowledge_graph.conflicts_detected',
            organization_id=organization_id,
            decisions=len(decisions),
            compared=len(ordered),
            conflicts=len(conflicts),
        )
        return conflicts

    def invalidate(self, organization_id: str | None = None) -> None:
        if organization_id is None:
            self._cache.clear()
        else:
            self._cache.pop(organization_id, None)

    async def _vectors(
        self, decisions: list[Decision]
    ) -> tuple[list[Decision], list[list[float]]]:
        """Decisions that have a vector (ordered earlier -> later) and their vectors."""
        ordered = sorted(decisions, key=lambda d: (d.effective_at, d.id))
        stored = await self.index.vectors_for(OwnerType.DECISION, [d.id for d in ordered])
        vectors: dict[str, list[float]] = {
            owner_id: list(embeddings[0].vector) for owner_id, embeddings in stored.items() if embeddings
        }

        missing = [d for d in ordered if d.id not in vectors]
        if missing and self.embedder is not None:
            try:
                fresh = await self.embedder([d.embedding_text() for d in missing])
            except Exception as e:
                raise ConflictDetectionError(
                    f"Failed to embed decisions: {e}", context={'missing': len(missing)}
                ) from e
            vectors.update({d.id: v for d, v in zip(missing, fresh)})
        elif missing:
            logger.debug('knowledge_graph.decisions_without_embedding', count=len(missing))

        kept = [d for d in ordered if d.id in vectors]
        return kept, [vectors[d.id] for d in kept]

    async def _compare(
        self,
        organization_id: str,
        decisions: list[Decision],
        vectors: list[list[float]],
    ) -> list[DecisionConflict]:
        if len(decisions) < 2:
            return []
        if len({len(v) for v in vectors}) > 1:
            raise ConflictDetectionError('Decision embeddings have mixed dimensions')

        sims = similarity_matrix(vectors)
        conflicts = []
        for i in range(len(decisions)):
            for j in range(i + 1, len(decisions)):
                similarity = float(sims[i, j])
                if similarity < self.similarity_floor:
                    continue
                earlier, later = decisions[i], decisions[j]
                classification = await self.classifier.classify(earlier, later, similarity)
                if classification is None:
                    continue
                conflicts.append(
                    DecisionConflict(
                        organization_id=organization_id,
                        decision_a_id=earlier.id,
                        decision_b_id=later.id,
                        conflict_type=classification.conflict_type,
                        confidence=min(max(classification.confidence, 0.0), 1.0),
                        explanation=classification.explanation,
                        similarity=round(min(similarity, 1.0), 4),
                    )
                )

        conflicts.sort(key=lambda c: (-c.confidence, c.decision_a_id, c.decision_b_id))
        return conflicts
