"""Data models for short-term conversation context."""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ConversationMessage(BaseModel):
    """A single message in a conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    author_id: str
    channel_id: str = ""
    content: str | list[dict[str, Any]]
    timestamp: datetime = Field(default_factory=_utc_now)
    role: Literal["user", "assistant", "system"] = "user"
    author_is_bot: bool = False

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are taken to be UTC; aware ones are converted."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def text(self) -> str:
        """Plain-text rendering of the content. Non-text parts become ``[Media]``."""
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for part in self.content:
            if part.get("type") == "text":
                parts.append(str(part.get("text", "")))
            else:
                parts.append("[Media]")
        return " ".join(p for p in parts if p)


class ContextScope(StrEnum):
    USER = "user"
    CHANNEL = "channel"


@dataclass(frozen=True)
class ContextKey:
    """Identifies one short-term buffer: a user DM or a shared channel."""

    scope: ContextScope
    id: str

    def __str__(self) -> str:
        return f"{self.scope}:{self.id}"


@dataclass
class ConversationContext:
    """Bounded FIFO buffer for one context key.

    Every appended message gets a monotonically increasing sequence
    number. ``transferred_seq`` is the highest sequence already promoted
    to long-term memory, so a buffer can be re-transferred without
    producing the same record twice.
    """

    key: ContextKey
    last_active_at: float
    messages: deque[ConversationMessage] = field(default_factory=deque)
    first_seq: int = 1
    transferred_seq: int = 0

    @property
    def last_seq(self) -> int:
        return self.first_seq + len(self.messages) - 1

    def append(self, message: ConversationMessage, limit: int, now: float) -> int:
        """Append and trim to *limit*. Returns the number of messages dropped."""
        self.messages.append(message)
        self.last_active_at = now
        dropped = 0
        while len(self.messages) > limit:
            self.messages.popleft()
            self.first_seq += 1
            dropped += 1
        return dropped

    def pending(self) -> tuple[list[ConversationMessage], int]:
        """Messages not yet transferred, and the sequence number they run through."""
        start = max(self.transferred_seq + 1, self.first_seq)
        offset = start - self.first_seq
        pending = list(self.messages)[offset:]
        return pending, self.last_seq

    def mark_transferred(self, through_seq: int) -> None:
        self.transferred_seq = max(self.transferred_seq, through_seq)

    def is_idle(self, now: float, timeout: float) -> bool:
        return now - self.last_active_at > timeout


@dataclass(frozen=True)
class PendingSnapshot:
    """Copy of the untransferred part of a buffer, taken under its lock."""

    key: ContextKey
    messages: tuple[ConversationMessage, ...]
    through_seq: int
