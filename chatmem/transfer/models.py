"""Transfer pipeline states, triggers and results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatmem.context.models import ContextKey
    from chatmem.memory.models import MemoryDecision, MemoryRecord


class TransferState(StrEnum):
    IDLE = "idle"
    SCORING = "scoring"
    SKIPPED = "skipped"
    EMBEDDING = "embedding"
    DUPLICATE_CHECK = "duplicate_check"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class TransferTrigger(StrEnum):
    OVERFLOW = "overflow"
    IDLE = "idle"
    MANUAL = "manual"

    @property
    def automatic(self) -> bool:
        """Automatic triggers drop when busy and never raise."""
        return self is not TransferTrigger.MANUAL


@dataclass(frozen=True)
class TransferOptions:
    """Caller overrides for a manual transfer."""

    importance: float | None = None
    category: str | None = None
    guild_id: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferResult:
    """Terminal state of one transfer attempt."""

    key: ContextKey
    trigger: TransferTrigger
    state: TransferState
    reason: str = ""
    decision: MemoryDecision | None = None
    memory_id: str | None = None
    messages_considered: int = 0

    @property
    def done(self) -> bool:
        return self.state is TransferState.DONE

    @property
    def duplicate_suppressed(self) -> bool:
        return (
            self.state is TransferState.SKIPPED
            and self.decision is not None
            and self.decision.is_duplicate
        )


@dataclass(frozen=True)
class SaveResult:
    """Outcome of an explicit save: the decision and the stored record, if any."""

    decision: MemoryDecision
    record: MemoryRecord | None = None

    @property
    def saved(self) -> bool:
        return self.record is not None
