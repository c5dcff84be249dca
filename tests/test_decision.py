"""Tests for the decision engine heuristics."""

from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatmem.context.models import ConversationMessage
from chatmem.memory.decision import (
    DecisionContext,
    DecisionEngine,
    analyze_context,
    analyze_sentiment,
    categorize,
    confidence_score,
    extract_facts,
    extract_topics,
    generate_tags,
    importance_score,
    memory_type,
    recall_score,
    retention_priority,
)
from chatmem.memory.gate import ConfigGate, MemoryConfig
from chatmem.memory.models import MemoryRecord, SimilarityMatch

_QUIET = DecisionContext(user_interaction=False)


def _msg(text: str, author: str = "u1", **kwargs) -> ConversationMessage:
    return ConversationMessage(author_id=author, content=text, **kwargs)


def _record(record_id: str, embedding: list[float], **kwargs) -> MemoryRecord:
    kwargs.setdefault("importance", 5)
    return MemoryRecord(id=record_id, content=record_id, embedding=embedding, **kwargs)


# -- Importance ----------------------------------------------------------------


def test_importance_length_component_is_capped() -> None:
    assert importance_score("x" * 50, _QUIET) == 0.5
    assert importance_score("x" * 500, _QUIET) == 2.0


def test_importance_keyword_weights() -> None:
    assert importance_score("decide", _QUIET) == 3.06
    assert importance_score("prefer", _QUIET) == 2.06
    assert importance_score("research", _QUIET) == 2.08
    assert importance_score("why?", _QUIET) == 1.04
    assert importance_score("angry", _QUIET) == 1.05


def test_importance_context_bonuses() -> None:
    ctx = DecisionContext(participants=3, conversation_length=6, user_interaction=True)
    assert importance_score("", ctx) == 3.0


def test_importance_is_clamped_to_ten() -> None:
    content = "I will decide on the data I prefer? So excited"
    ctx = DecisionContext(participants=3, conversation_length=6)
    assert importance_score(content, ctx) == 10.0


def test_analyze_context() -> None:
    start = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    messages = [
        _msg("hi", "u1", timestamp=start.isoformat()),
        _msg("hello", "u2", timestamp=(start + timedelta(minutes=5)).isoformat()),
        _msg("hey", "u3", role="assistant", timestamp=(start + timedelta(minutes=9)).isoformat()),
    ]

    ctx = analyze_context(messages)

    assert ctx.participants == 3
    assert ctx.multi_party
    assert ctx.conversation_length == 3
    assert ctx.time_span_seconds == 540
    assert ctx.user_interaction


# -- Classification ------------------------------------------------------------


@pytest.mark.parametrize(
    ("content", "category"),
    [
        ("I love the team meeting", "user_preference"),
        ("Our team meeting moved", "relationship"),
        ("The deadline is Friday", "event"),
        ("Please remind me tomorrow", "reminder"),
        ("That was a good suggestion", "feedback"),
        ("hello there", "context"),
    ],
)
def test_categorize_first_rule_wins(content: str, category: str) -> None:
    assert categorize(content) == category


def test_extract_topics() -> None:
    assert extract_topics("Can we discuss pricing? topic: Rust") == ["pricing", "rust"]
    assert extract_topics("nothing to see") == []


def test_extract_topics_is_capped() -> None:
    content = " ".join(f"about t{i}." for i in range(10))
    assert extract_topics(content) == [f"t{i}" for i in range(5)]


@pytest.mark.parametrize(
    ("content", "sentiment"),
    [
        ("This is great, I love it", "positive"),
        ("terrible and awful", "negative"),
        ("good but bad", "neutral"),
        ("ok", "neutral"),
    ],
)
def test_analyze_sentiment(content: str, sentiment: str) -> None:
    assert analyze_sentiment(content) == sentiment


def test_extract_facts() -> None:
    content = "Paris is the capital. I went there! Was it fun? Rust has traits. Python is slow."
    assert extract_facts(content) == ["Paris is the capital", "Was it fun", "Rust has traits"]


def test_generate_tags() -> None:
    tags = generate_tags(
        "Is this urgent? It's personal",
        "decision",
        ["road map"],
        DecisionContext(participants=3),
        8.5,
    )
    assert tags == [
        "decision",
        "road_map",
        "question",
        "urgent",
        "personal",
        "group_conversation",
        "high_importance",
    ]


def test_memory_type() -> None:
    assert memory_type("how to deploy the app") == "procedural"
    assert memory_type("the definition of a monad") == "semantic"
    assert memory_type("what happened yesterday") == "episodic"
    assert memory_type("hello") == "contextual"


def test_retention_priority_and_confidence() -> None:
    assert retention_priority(8) == "critical"
    assert retention_priority(6) == "high"
    assert retention_priority(4) == "medium"
    assert retention_priority(3.9) == "low"
    assert confidence_score(8.5, "decision") == 0.9
    assert confidence_score(5, "context") == 0.6
    assert confidence_score(8.5, "decision", duplicate=True) == 0.6


# -- DecisionEngine.score ------------------------------------------------------


def test_score_empty_input() -> None:
    engine = DecisionEngine(ConfigGate())

    decision = engine.score([_msg("   ")])

    assert decision.should_save is False
    assert decision.reasoning == "no content to evaluate"


def test_score_explicit_importance_override() -> None:
    engine = DecisionEngine(ConfigGate())

    decision = engine.score([_msg("I prefer dark mode")], importance=7)

    assert decision.should_save is True
    assert decision.importance == 7.0
    assert decision.category == "user_preference"
    assert "user_preference" in decision.tags
    assert decision.retention_priority == "high"
    assert decision.confidence == 0.8


def test_score_below_threshold() -> None:
    engine = DecisionEngine(ConfigGate())

    decision = engine.score([_msg("I prefer dark mode")])

    assert decision.importance == 3.18
    assert decision.should_save is False
    assert "below threshold" in decision.reasoning


def test_score_uses_current_threshold() -> None:
    engine = DecisionEngine(ConfigGate(MemoryConfig(memory_decision_threshold=3)))

    assert engine.score([_msg("I prefer dark mode")]).should_save is True


def test_score_is_deterministic() -> None:
    engine = DecisionEngine(ConfigGate())
    messages = [_msg("We will ship on Monday", "u1"), _msg("Sounds great", "u2")]

    assert engine.score(messages) == engine.score(messages)


def test_score_mixes_naive_and_aware_timestamps() -> None:
    engine = DecisionEngine(ConfigGate())
    seeded = _msg("We will ship on Monday", "u1", timestamp="2026-05-01T10:00:00")
    live = _msg("Sounds great", "u2", timestamp=datetime(2026, 5, 1, 12, 0, tzinfo=UTC))

    decision = engine.score([seeded, live])

    assert seeded.timestamp.tzinfo is not None
    assert analyze_context([seeded, live]).time_span_seconds == 7200
    assert decision.reasoning


def test_message_timestamps_are_normalized_to_utc() -> None:
    offset = timezone(timedelta(hours=2))
    message = _msg("hi", timestamp=datetime(2026, 5, 1, 12, 0, tzinfo=offset))

    assert message.timestamp == datetime(2026, 5, 1, 10, 0, tzinfo=UTC)
    assert message.timestamp.utcoffset() == timedelta(0)


def test_score_category_override() -> None:
    engine = DecisionEngine(ConfigGate())

    decision = engine.score([_msg("I prefer dark mode")], category="knowledge")

    assert decision.category == "knowledge"


# -- Duplicate detection -------------------------------------------------------


def test_duplicate_check_marks_near_identical() -> None:
    engine = DecisionEngine(ConfigGate())
    decision = engine.score([_msg("I prefer dark mode")], importance=7)

    checked = engine.apply_duplicate_check(
        decision, [1.0, 0.0], [_record("far", [1.0, 1.0]), _record("same", [1.0, 0.0])]
    )

    assert checked.should_save is False
    assert checked.is_duplicate
    assert checked.duplicate_of == "same"
    assert checked.duplicate_similarity == 1.0
    assert checked.reasoning.startswith("duplicate")


def test_duplicate_threshold_is_strict() -> None:
    engine = DecisionEngine(ConfigGate(MemoryConfig(duplicate_threshold=1.0)))
    decision = engine.score([_msg("I prefer dark mode")], importance=7)

    checked = engine.apply_duplicate_check(decision, [1.0, 0.0], [_record("same", [1.0, 0.0])])

    assert checked is decision
    assert checked.should_save is True


async def test_check_duplicate_embeds_content() -> None:
    embed = AsyncMock(return_value=[0.0, 1.0])
    engine = DecisionEngine(ConfigGate(), embed)
    decision = engine.score([_msg("I prefer dark mode")], importance=7)

    candidates = [_record("m", [0.0, 2.0])]

    checked = await engine.check_duplicate(decision, "I prefer dark mode", candidates)

    embed.assert_awaited_once_with("I prefer dark mode")
    assert checked.duplicate_of == "m"


async def test_check_duplicate_without_embedder() -> None:
    engine = DecisionEngine(ConfigGate())
    decision = engine.score([_msg("hello")])

    with pytest.raises(RuntimeError):
        await engine.check_duplicate(decision, "hello", [])


# -- Recall ranking ------------------------------------------------------------


def test_recall_score_prefers_importance_and_recency() -> None:
    now = datetime.now(UTC)
    recent = (now - timedelta(minutes=5)).isoformat()
    old = (now - timedelta(days=30)).isoformat()

    important = SimilarityMatch(_record("a", [1.0], importance=9, created_at=recent), 0.8)
    trivial = SimilarityMatch(_record("b", [1.0], importance=2, created_at=recent), 0.8)
    stale = SimilarityMatch(_record("c", [1.0], importance=9, created_at=old), 0.8)

    assert recall_score(important, now) > recall_score(trivial, now)
    assert recall_score(important, now) > recall_score(stale, now)


def test_recall_score_counts_accesses() -> None:
    now = datetime.now(UTC)
    created = now.isoformat()
    never = SimilarityMatch(_record("a", [1.0], created_at=created), 0.7)
    often = SimilarityMatch(
        _record("b", [1.0], created_at=created, access_count=20, last_accessed_at=created), 0.7
    )

    assert recall_score(often, now) - recall_score(never, now) == pytest.approx(0.15)
