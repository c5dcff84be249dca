"""Turning a slice of conversation into the text of a memory record.

Without a chat capability the memory content is a compact transcript.
With one, the conversation is summarized by the model; any failure falls
back to a deterministic summary so a transfer never stalls on it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from chatmem.context.models import ConversationMessage
    from chatmem.memory.models import MemoryDecision

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 500
RECENT_MESSAGES_IN_SUMMARY = 3

SUMMARY_SYSTEM = (
    "You are a conversation analyzer. Respond with valid JSON only. "
    "Focus on extracting meaningful information and context."
)


@dataclass
class ConversationSummary:
    summary: str
    main_topics: list[str] = field(default_factory=list)
    key_events: list[str] = field(default_factory=list)
    sentiment: str = "neutral"


def format_transcript(messages: Sequence[ConversationMessage]) -> str:
    lines = []
    for msg in messages:
        text = msg.text.strip()
        if len(text) > MAX_MESSAGE_CHARS:
            text = text[:MAX_MESSAGE_CHARS] + "..."
        lines.append(f"{msg.author_id}: {text}")
    return "\n".join(lines)


def build_summary_prompt(messages: Sequence[ConversationMessage]) -> str:
    return (
        "Analyze this conversation and provide a summary:\n\n"
        f"<conversation>\n{format_transcript(messages)}\n</conversation>\n\n"
        "Return JSON with:\n"
        "- summary: 2-3 sentence summary of the conversation\n"
        "- main_topics: array of main topics (max 5)\n"
        "- key_events: array of important events or decisions (max 3)\n"
        "- sentiment: positive, neutral or negative\n\n"
        "Focus on factual content, decisions made, and actionable information."
    )


def parse_summary(text: str) -> ConversationSummary | None:
    """Parse the model's JSON output, tolerating markdown fences."""
    data: Any
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            logger.warning("Failed to parse summary JSON")
            return None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            logger.warning("Failed to parse summary JSON")
            return None

    if not isinstance(data, dict) or not str(data.get("summary", "")).strip():
        return None
    return ConversationSummary(
        summary=str(data["summary"]).strip(),
        main_topics=[str(t) for t in data.get("main_topics", [])][:5],
        key_events=[str(e) for e in data.get("key_events", [])][:3],
        sentiment=str(data.get("sentiment", "neutral")),
    )


def fallback_summary(
    messages: Sequence[ConversationMessage], decision: MemoryDecision
) -> ConversationSummary:
    participants = {m.author_id for m in messages}
    return ConversationSummary(
        summary=(
            f"Conversation between {len(participants)} participant(s) "
            f"with {len(messages)} message(s)"
        ),
        main_topics=list(decision.topics) or ["general conversation"],
        sentiment=decision.sentiment,
    )


def render_summary(
    summary: ConversationSummary,
    messages: Sequence[ConversationMessage],
    decision: MemoryDecision,
) -> str:
    parts = [summary.summary, "", f"Topics: {', '.join(summary.main_topics)}"]
    if summary.key_events:
        parts.append(f"Key events: {'; '.join(summary.key_events)}")
    parts.append(f"Sentiment: {summary.sentiment}")
    parts.append(f"Importance: {decision.importance:.0f}/10")
    recent = format_transcript(messages[-RECENT_MESSAGES_IN_SUMMARY:])
    parts.extend(["", "Recent messages:", recent])
    return "\n".join(parts)


class ConversationSummarizer:
    """Builds memory content, optionally through a chat model.

    Args:
        chat: ``complete_text``-compatible callable. None disables
            model summaries.
        model: Model name passed through to *chat*.
    """

    def __init__(
        self,
        chat: Callable[..., Awaitable[str]] | None = None,
        model: str | None = None,
    ) -> None:
        self._chat = chat
        self._model = model

    async def compose(
        self,
        messages: Sequence[ConversationMessage],
        decision: MemoryDecision,
        *,
        use_model: bool = False,
    ) -> str:
        if not use_model or self._chat is None:
            return format_transcript(messages)

        summary: ConversationSummary | None = None
        try:
            text = await self._chat(
                [{"role": "user", "content": build_summary_prompt(messages)}],
                system=SUMMARY_SYSTEM,
                model=self._model,
            )
            summary = parse_summary(text)
        except Exception:
            logger.warning("Conversation summary failed, using fallback", exc_info=True)
        if summary is None:
            summary = fallback_summary(messages, decision)
        return render_summary(summary, messages, decision)
