"""Decision engine: should a slice of conversation become a long-term memory?

All heuristics live here. Scoring is deterministic: the same messages and
thresholds always produce the same decision. The only I/O is the optional
duplicate check, which embeds content through an injected callable.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from chatmem.memory.gate import ConfigGate
from chatmem.memory.models import MemoryDecision, MemoryRecord, SimilarityMatch
from chatmem.memory.vectors import cosine_similarity

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from chatmem.context.models import ConversationMessage

# -- Rule set ------------------------------------------------------------------

DECISION_PATTERN = re.compile(r"\b(?:decide|choose|will|going to|plan to)", re.IGNORECASE)
PREFERENCE_PATTERN = re.compile(r"\b(?:prefer|like|dislike|favorite)", re.IGNORECASE)
FACTUAL_PATTERN = re.compile(r"\b(?:fact|information|data|research)", re.IGNORECASE)
EMOTIONAL_PATTERN = re.compile(r"\b(?:excited|frustrated|happy|sad|angry)", re.IGNORECASE)
URGENT_PATTERN = re.compile(r"\b(?:urgent|important|asap)", re.IGNORECASE)
PERSONAL_PATTERN = re.compile(r"\b(?:personal|private)", re.IGNORECASE)
FACT_SENTENCE_PATTERN = re.compile(
    r"\b(?:is|are|was|were|has|have|will be|can be)\b", re.IGNORECASE
)

CATEGORY_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("user_preference", re.compile(r"\b(?:prefer|like|dislike|favorite|hate|love)", re.I)),
    ("important_fact", re.compile(r"\b(?:fact|information|data|research|study)", re.I)),
    ("decision", re.compile(r"\b(?:decide|choose|will|going to|plan to)", re.I)),
    ("relationship", re.compile(r"\b(?:friend|family|colleague|team|partner)", re.I)),
    ("event", re.compile(r"\b(?:meeting|appointment|deadline|event|conference)", re.I)),
    ("knowledge", re.compile(r"\b(?:learn|study|understand|know|remember)", re.I)),
    ("reminder", re.compile(r"\b(?:remind|remember|don't forget|make sure)", re.I)),
    ("feedback", re.compile(r"\b(?:feedback|suggestion|improvement|better)", re.I)),
)
DEFAULT_CATEGORY = "context"

TOPIC_PATTERNS = (
    re.compile(r"\b(?:about|discuss|talk about|regarding)\s+(\w+(?:[ \t]+\w+){0,2})", re.I),
    re.compile(r"\b(?:topic|subject|theme):\s*(\w+(?:[ \t]+\w+){0,2})", re.I),
    re.compile(r"\b(?:learning|studying|working on)\s+(\w+(?:[ \t]+\w+){0,2})", re.I),
)
MAX_TOPICS = 5
MAX_FACTS = 3

POSITIVE_WORDS = frozenset(
    {"good", "great", "excellent", "amazing", "wonderful", "fantastic", "love", "like", "enjoy"}
)
NEGATIVE_WORDS = frozenset(
    {"bad", "terrible", "awful", "hate", "dislike", "frustrated", "annoyed", "disappointed"}
)

# Recall ranking weights
RECENCY_WEIGHT = 0.2
FREQUENCY_WEIGHT = 0.15
IMPORTANCE_WEIGHT = 0.25
RELEVANCE_WEIGHT = 0.4


@dataclass(frozen=True)
class DecisionContext:
    """Conversation-level signals that feed the importance score."""

    participants: int = 1
    conversation_length: int = 1
    time_span_seconds: float = 0.0
    user_interaction: bool = True

    @property
    def multi_party(self) -> bool:
        return self.participants > 2


def analyze_context(messages: Sequence[ConversationMessage]) -> DecisionContext:
    time_span = 0.0
    if len(messages) > 1:
        span = messages[-1].timestamp - messages[0].timestamp
        time_span = max(span.total_seconds(), 0.0)
    return DecisionContext(
        participants=len({m.author_id for m in messages if m.author_id}),
        conversation_length=len(messages),
        time_span_seconds=time_span,
        user_interaction=any(m.role == "user" for m in messages),
    )


def importance_score(content: str, context: DecisionContext) -> float:
    """Weighted sum of content and conversation signals, clamped to [0, 10]."""
    score = min(len(content) / 100, 2.0)
    if DECISION_PATTERN.search(content):
        score += 3
    if PREFERENCE_PATTERN.search(content):
        score += 2
    if FACTUAL_PATTERN.search(content):
        score += 2
    if "?" in content:
        score += 1
    if EMOTIONAL_PATTERN.search(content):
        score += 1
    if context.user_interaction:
        score += 1
    if context.conversation_length > 5:
        score += 1
    if context.multi_party:
        score += 1
    return round(min(max(score, 0.0), 10.0), 2)


def categorize(content: str) -> str:
    """First matching category rule wins."""
    for category, pattern in CATEGORY_RULES:
        if pattern.search(content):
            return category
    return DEFAULT_CATEGORY


def extract_topics(content: str) -> list[str]:
    topics: list[str] = []
    for pattern in TOPIC_PATTERNS:
        for match in pattern.finditer(content):
            topic = match.group(1).lower().strip()
            if topic and topic not in topics:
                topics.append(topic)
    return topics[:MAX_TOPICS]


def analyze_sentiment(content: str) -> str:
    words = [w.strip(".,!?;:\"'()") for w in content.lower().split()]
    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def extract_facts(content: str) -> list[str]:
    facts = []
    for sentence in re.split(r"[.!?]+", content):
        sentence = sentence.strip()
        if sentence and FACT_SENTENCE_PATTERN.search(sentence):
            facts.append(sentence)
    return facts[:MAX_FACTS]


def generate_tags(
    content: str,
    category: str,
    topics: Iterable[str],
    context: DecisionContext,
    importance: float,
) -> list[str]:
    tags = [category]
    tags.extend(t.replace(" ", "_") for t in topics)
    if "?" in content:
        tags.append("question")
    if URGENT_PATTERN.search(content):
        tags.append("urgent")
    if PERSONAL_PATTERN.search(content):
        tags.append("personal")
    if context.multi_party:
        tags.append("group_conversation")
    if importance >= 8:
        tags.append("high_importance")
    return list(dict.fromkeys(tags))


def memory_type(content: str) -> str:
    if re.search(r"(?:how to|step|process|procedure)", content, re.I):
        return "procedural"
    if re.search(r"(?:fact|definition|concept|theory)", content, re.I):
        return "semantic"
    if re.search(r"(?:when|where|what happened|experience)", content, re.I):
        return "episodic"
    return "contextual"


def retention_priority(importance: float) -> str:
    if importance >= 8:
        return "critical"
    if importance >= 6:
        return "high"
    if importance >= 4:
        return "medium"
    return "low"


def confidence_score(importance: float, category: str, duplicate: bool = False) -> float:
    confidence = 0.5
    if importance >= 8:
        confidence += 0.3
    elif importance >= 6:
        confidence += 0.2
    elif importance >= 4:
        confidence += 0.1
    if category != DEFAULT_CATEGORY:
        confidence += 0.1
    if duplicate:
        confidence -= 0.3
    return round(min(max(confidence, 0.0), 1.0), 2)


def _reasoning(content: str, importance: float, threshold: float, category: str) -> str:
    reasons = []
    if importance >= threshold:
        reasons.append(f"importance {importance:.1f} meets threshold {threshold:.1f}")
    else:
        reasons.append(f"importance {importance:.1f} below threshold {threshold:.1f}")
    if importance >= 8:
        reasons.append("high importance due to significant content")
    reasons.append(f"categorized as {category}")
    if "?" in content:
        reasons.append("contains questions or seeks information")
    if DECISION_PATTERN.search(content):
        reasons.append("contains decision-making content")
    return "; ".join(reasons)


def recall_score(match: SimilarityMatch, now: datetime | None = None) -> float:
    """Rank a search hit by recency, access frequency, importance and relevance."""
    now = now or datetime.now(UTC)
    record = match.record
    created = datetime.fromisoformat(record.created_at)
    last_accessed = datetime.fromisoformat(record.last_accessed_at or record.created_at)
    day = 24 * 60 * 60
    recency = (
        math.exp(-max((now - last_accessed).total_seconds(), 0) / day) * 0.5
        + math.exp(-max((now - created).total_seconds(), 0) / (7 * day)) * 0.5
    )
    frequency = min(record.access_count / 10, 1.0)
    return (
        recency * RECENCY_WEIGHT
        + frequency * FREQUENCY_WEIGHT
        + (record.importance / 10) * IMPORTANCE_WEIGHT
        + match.similarity * RELEVANCE_WEIGHT
    )


# -- Engine --------------------------------------------------------------------


class DecisionEngine:
    """Scores conversation slices and flags near-duplicates.

    Args:
        gate: Source of the current thresholds.
        embed: Async text-to-vector callable used by ``check_duplicate``.
    """

    def __init__(
        self,
        gate: ConfigGate | None = None,
        embed: Callable[[str], Awaitable[list[float]]] | None = None,
    ) -> None:
        self._gate = gate or ConfigGate()
        self._embed = embed

    def score(
        self,
        messages: Sequence[ConversationMessage],
        context: DecisionContext | None = None,
        *,
        importance: float | None = None,
        category: str | None = None,
    ) -> MemoryDecision:
        """Decide whether *messages* are worth keeping.

        *importance* and *category* override the heuristics, e.g. for an
        explicit save where the caller already knows both.
        """
        messages = [m for m in messages if m.text.strip()]
        threshold = self._gate.config.memory_decision_threshold
        if not messages:
            return MemoryDecision(
                should_save=False,
                importance=0.0,
                category=category or DEFAULT_CATEGORY,
                sentiment="neutral",
                topics=(),
                reasoning="no content to evaluate",
            )

        content = "\n".join(m.text for m in messages)
        context = context or analyze_context(messages)
        score = float(importance) if importance is not None else importance_score(content, context)
        category = category or categorize(content)
        topics = extract_topics(content)

        return MemoryDecision(
            should_save=score >= threshold,
            importance=score,
            category=category,
            sentiment=analyze_sentiment(content),
            topics=tuple(topics),
            reasoning=_reasoning(content, score, threshold, category),
            tags=tuple(generate_tags(content, category, topics, context, score)),
            facts=tuple(extract_facts(content)),
            memory_type=memory_type(content),
            retention_priority=retention_priority(score),
            confidence=confidence_score(score, category),
        )

    def apply_duplicate_check(
        self,
        decision: MemoryDecision,
        embedding: Sequence[float],
        candidates: Iterable[MemoryRecord],
    ) -> MemoryDecision:
        """Mark *decision* as a duplicate if any candidate is too similar.

        A candidate counts as a duplicate when its cosine similarity to
        *embedding* is strictly above the configured duplicate threshold.
        """
        threshold = self._gate.config.duplicate_threshold
        best: tuple[MemoryRecord, float] | None = None
        for record in candidates:
            similarity = cosine_similarity(embedding, record.embedding)
            if similarity > threshold and (best is None or similarity > best[1]):
                best = (record, similarity)
        if best is None:
            return decision

        record, similarity = best
        return replace(
            decision,
            should_save=False,
            duplicate_of=record.id,
            duplicate_similarity=round(similarity, 4),
            confidence=confidence_score(decision.importance, decision.category, duplicate=True),
            reasoning=(
                f"duplicate: similar content already exists in memory "
                f"({record.id}, similarity {similarity:.2f}); {decision.reasoning}"
            ),
        )

    async def check_duplicate(
        self,
        decision: MemoryDecision,
        content: str,
        candidates: Iterable[MemoryRecord],
    ) -> MemoryDecision:
        """Embed *content* and run ``apply_duplicate_check`` against *candidates*."""
        if self._embed is None:
            raise RuntimeError("DecisionEngine has no embed callable configured")
        embedding = await self._embed(content)
        return self.apply_duplicate_check(decision, embedding, candidates)
