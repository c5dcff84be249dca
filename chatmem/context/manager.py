"""Short-term context manager: bounded per-conversation message buffers.

Each user DM and each shared channel gets its own FIFO buffer, keyed by
``ContextKey``. Every mutation of a buffer happens under that key's lock,
so concurrent appends to one conversation never interleave while other
conversations proceed untouched.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from chatmem.context.history import filter_seed_history
from chatmem.context.locks import KeyedLocks
from chatmem.context.models import (
    ContextKey,
    ContextScope,
    ConversationContext,
    ConversationMessage,
    PendingSnapshot,
)
from chatmem.memory.gate import Permission
from chatmem.transfer.models import TransferTrigger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from chatmem.context.history import HistorySource
    from chatmem.memory.gate import ConfigGate
    from chatmem.transfer.pipeline import TransferPipeline

logger = logging.getLogger(__name__)


def make_key(scope: ContextScope | str, context_id: str) -> ContextKey:
    return ContextKey(scope=ContextScope(scope), id=str(context_id))


class ShortTermContextManager:
    """Owns every live conversation buffer.

    Args:
        gate: Source of ``short_term_limit``, ``session_timeout`` and the
            automatic-transfer flags.
        history_source: Optional platform history used to seed a buffer
            the first time its key is seen.
        bot_id: The assistant's own author id, kept when seeding.
        command_prefix: Messages starting with this are never seeded.
        seed_limit: Maximum number of seeded messages.
        clock: Monotonic time source (seconds).
    """

    def __init__(
        self,
        gate: ConfigGate,
        history_source: HistorySource | None = None,
        *,
        bot_id: str | None = None,
        command_prefix: str = "/",
        seed_limit: int = 35,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gate = gate
        self._history_source = history_source
        self._bot_id = bot_id
        self._command_prefix = command_prefix
        self._seed_limit = seed_limit
        self._clock = clock
        self._contexts: dict[ContextKey, ConversationContext] = {}
        self._locks: KeyedLocks[ContextKey] = KeyedLocks()
        self._expiring: set[ContextKey] = set()
        self._pipeline: TransferPipeline | None = None
        self._on_overflow: Callable[[ContextKey], None] | None = None

    def attach_pipeline(self, pipeline: TransferPipeline) -> None:
        """Wire the pipeline used by ``clear`` and ``sweep_idle``."""
        self._pipeline = pipeline

    def set_overflow_handler(self, handler: Callable[[ContextKey], None] | None) -> None:
        """Called (outside the lock) with the key whenever an append drops messages."""
        self._on_overflow = handler

    # -- Buffer operations -----------------------------------------------------

    async def append(
        self,
        scope: ContextScope | str,
        context_id: str,
        message: ConversationMessage,
        channel_ref: Any = None,
    ) -> int:
        """Append *message* to a buffer, creating it on first use.

        Returns the buffer length after the append. When the buffer is
        over ``short_term_limit`` the oldest messages are dropped. A buffer
        that has sat idle past ``session_timeout`` is transferred and
        evicted first, so the message starts a fresh one.
        """
        key = make_key(scope, context_id)
        stale = self._contexts.get(key)
        if (
            stale is not None
            and key not in self._expiring
            and stale.is_idle(self._clock(), self._gate.config.session_timeout)
        ):
            await self._expire(key)

        limit = self._gate.config.short_term_limit
        async with self._locks.hold(key):
            context = self._contexts.get(key)
            if context is None:
                context = ConversationContext(key=key, last_active_at=self._clock())
                for seeded in await self._seed(key, channel_ref):
                    context.append(seeded, limit, self._clock())
                self._contexts[key] = context
                logger.debug("Created context %s", key)
            dropped = context.append(message, limit, self._clock())
            length = len(context.messages)

        if dropped:
            logger.debug("Context %s over limit, dropped %d message(s)", key, dropped)
            if self._on_overflow is not None and self._gate.config.automatic_transfer:
                self._on_overflow(key)
        return length

    def get_history(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        roles: Iterable[str] | None = None,
        limit: int | None = None,
        include_system: bool = False,
    ) -> list[ConversationMessage]:
        """Snapshot of a buffer, oldest first. Never mutates the buffer."""
        context = self._contexts.get(make_key(scope, context_id))
        if context is None:
            return []
        messages = list(context.messages)
        if roles is not None:
            wanted = set(roles)
            messages = [m for m in messages if m.role in wanted]
        elif not include_system:
            messages = [m for m in messages if m.role != "system"]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def clear(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        transfer_first: bool = True,
        actor_id: str | None = None,
    ) -> int:
        """Empty a buffer. Returns the number of messages removed.

        With *transfer_first*, pending messages go through the transfer
        pipeline before the buffer is removed; if that transfer fails the
        error propagates and the buffer is left as it was.
        """
        key = make_key(scope, context_id)
        if (
            transfer_first
            and self._pipeline is not None
            and key in self._contexts
            and self._gate.allowed(Permission.SAVE, actor_id)
        ):
            await self._pipeline.transfer(
                key.scope, key.id, trigger=TransferTrigger.MANUAL, actor_id=actor_id
            )

        async with self._locks.hold(key):
            context = self._contexts.pop(key, None)
        self._forget(key)
        cleared = len(context.messages) if context else 0
        logger.info("Cleared context %s (%d message(s))", key, cleared)
        return cleared

    async def sweep_idle(self) -> int:
        """Transfer and evict buffers idle longer than ``session_timeout``.

        Idleness is re-checked under the buffer lock after the transfer,
        so a message appended in the meantime keeps the buffer alive.
        Returns the number of evicted buffers.
        """
        timeout = self._gate.config.session_timeout
        now = self._clock()
        idle = [k for k, c in self._contexts.items() if c.is_idle(now, timeout)]
        if not idle:
            return 0

        evicted = 0
        for key in idle:
            if key not in self._expiring and await self._expire(key):
                evicted += 1

        logger.info("Idle sweep evicted %d of %d idle context(s)", evicted, len(idle))
        return evicted

    # -- Transfer support ------------------------------------------------------

    async def pending_snapshot(self, key: ContextKey) -> PendingSnapshot | None:
        """Copy of the untransferred messages of *key*, or None if there is no buffer."""
        async with self._locks.hold(key):
            context = self._contexts.get(key)
            if context is None:
                return None
            messages, through_seq = context.pending()
            return PendingSnapshot(key=key, messages=tuple(messages), through_seq=through_seq)

    async def mark_transferred(self, key: ContextKey, through_seq: int) -> None:
        async with self._locks.hold(key):
            context = self._contexts.get(key)
            if context is not None:
                context.mark_transferred(through_seq)

    # -- Introspection ---------------------------------------------------------

    def keys(self) -> list[ContextKey]:
        return list(self._contexts)

    @property
    def active_contexts(self) -> int:
        return len(self._contexts)

    @property
    def buffered_messages(self) -> int:
        return sum(len(c.messages) for c in self._contexts.values())

    # -- Internal --------------------------------------------------------------

    async def _expire(self, key: ContextKey) -> bool:
        """Best-effort idle transfer, then evict *key* if it is still idle."""
        self._expiring.add(key)
        try:
            if self._pipeline is not None and self._gate.config.automatic_transfer:
                await self._pipeline.transfer(key.scope, key.id, trigger=TransferTrigger.IDLE)
            async with self._locks.hold(key):
                context = self._contexts.get(key)
                if context is None:
                    return False
                if not context.is_idle(self._clock(), self._gate.config.session_timeout):
                    logger.debug("Context %s became active during expiry, keeping it", key)
                    return False
                del self._contexts[key]
        finally:
            self._expiring.discard(key)
        self._forget(key)
        logger.debug("Evicted idle context %s", key)
        return True

    def _forget(self, key: ContextKey) -> None:
        if self._pipeline is not None:
            self._pipeline.forget(key)

    async def _seed(self, key: ContextKey, channel_ref: Any) -> list[ConversationMessage]:
        if self._history_source is None or channel_ref is None:
            return []
        try:
            history = await self._history_source.fetch_recent_messages(channel_ref)
        except Exception:
            logger.warning("Failed to fetch seed history for %s", key, exc_info=True)
            return []
        return filter_seed_history(
            history,
            bot_id=self._bot_id,
            command_prefix=self._command_prefix,
            limit=self._seed_limit,
        )
