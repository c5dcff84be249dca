"""Transfer pipeline: promote short-term buffers to long-term memory.

One transfer walks ``IDLE -> SCORING -> EMBEDDING -> DUPLICATE_CHECK ->
PERSISTING -> DONE``, stopping at ``SKIPPED`` when the content is not worth
keeping or already stored. At most one transfer runs per context key:
automatic triggers (overflow, idle) drop when the key is busy, a manual
trigger waits its turn.

Nothing is removed from a buffer here. A successful transfer only moves
the buffer's transfer watermark, so a skipped or failed attempt leaves
the conversation exactly as it was.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from chatmem.context.locks import KeyedLocks
from chatmem.context.manager import make_key
from chatmem.context.models import ContextKey, ContextScope, ConversationMessage
from chatmem.errors import ValidationError
from chatmem.memory.gate import Permission
from chatmem.memory.models import MemoryDecision, MemoryOwner, MemoryRecord
from chatmem.transfer.models import (
    SaveResult,
    TransferOptions,
    TransferResult,
    TransferState,
    TransferTrigger,
)
from chatmem.transfer.summary import ConversationSummarizer

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from chatmem.context.manager import ShortTermContextManager
    from chatmem.memory.decision import DecisionEngine
    from chatmem.memory.embeddings import EmbeddingGateway
    from chatmem.memory.gate import ConfigGate
    from chatmem.memory.relationships import RelationshipMapper
    from chatmem.memory.store import MemoryStore

logger = logging.getLogger(__name__)

TRANSFERABLE_ROLES = ("user", "assistant")
DUPLICATE_CANDIDATES = 5


def _record_importance(score: float) -> int:
    return max(1, min(10, int(score + 0.5)))


def owner_for(key: ContextKey, guild_id: str | None = None) -> MemoryOwner:
    """User buffers are owned by the user; channel buffers by the guild (or channel)."""
    if key.scope is ContextScope.USER:
        return MemoryOwner(user_id=key.id, guild_id=guild_id)
    return MemoryOwner(guild_id=guild_id or key.id)


class TransferPipeline:
    """Scores, embeds, de-duplicates and persists conversation slices.

    Args:
        contexts: Buffer owner; read through ``pending_snapshot``.
        decisions: Heuristic scoring and duplicate detection.
        embeddings: Text to vector.
        store: Long-term record store.
        gate: Permissions and feature flags.
        summarizer: Builds the record text. Defaults to a transcript.
        mapper: When given (and the relationships feature is on), new
            records are linked to similar existing ones.
    """

    def __init__(
        self,
        contexts: ShortTermContextManager,
        decisions: DecisionEngine,
        embeddings: EmbeddingGateway,
        store: MemoryStore,
        gate: ConfigGate,
        *,
        summarizer: ConversationSummarizer | None = None,
        mapper: RelationshipMapper | None = None,
    ) -> None:
        self._contexts = contexts
        self._decisions = decisions
        self._embeddings = embeddings
        self._store = store
        self._gate = gate
        self._summarizer = summarizer or ConversationSummarizer()
        self._mapper = mapper
        self._locks: KeyedLocks[ContextKey] = KeyedLocks()
        self._owner_locks: KeyedLocks[MemoryOwner] = KeyedLocks()
        self._states: dict[ContextKey, TransferState] = {}
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def state_of(self, scope: ContextScope | str, context_id: str) -> TransferState:
        """Last state reached by a transfer for this key."""
        return self._states.get(make_key(scope, context_id), TransferState.IDLE)

    def is_busy(self, scope: ContextScope | str, context_id: str) -> bool:
        return self._locks.locked(make_key(scope, context_id))

    def forget(self, key: ContextKey) -> None:
        """Drop the remembered state of an evicted buffer."""
        if key not in self._locks:
            self._states.pop(key, None)

    # -- Transfer --------------------------------------------------------------

    async def transfer(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        trigger: TransferTrigger = TransferTrigger.MANUAL,
        options: TransferOptions | None = None,
        actor_id: str | None = None,
    ) -> TransferResult:
        """Promote the untransferred part of a buffer.

        Manual transfers raise on failure (NotPermitted, StoreUnavailable,
        DimensionMismatch). Automatic transfers log and return a
        ``FAILED`` result instead.
        """
        key = make_key(scope, context_id)
        if trigger.automatic and self._locks.locked(key):
            logger.debug("Transfer for %s already in flight, dropping %s trigger", key, trigger)
            return TransferResult(
                key=key,
                trigger=trigger,
                state=TransferState.SKIPPED,
                reason="transfer already in flight",
            )

        async with self._locks.hold(key):
            self._in_flight += 1
            try:
                return await self._run(key, trigger, options or TransferOptions(), actor_id)
            except Exception as exc:
                self._states[key] = TransferState.FAILED
                if not trigger.automatic:
                    raise
                logger.exception("%s transfer for %s abandoned", trigger, key)
                return TransferResult(
                    key=key, trigger=trigger, state=TransferState.FAILED, reason=str(exc)
                )
            finally:
                self._in_flight -= 1

    async def _run(
        self,
        key: ContextKey,
        trigger: TransferTrigger,
        options: TransferOptions,
        actor_id: str | None,
    ) -> TransferResult:
        self._states[key] = TransferState.SCORING
        if trigger.automatic:
            if not self._gate.allowed(Permission.SAVE):
                return self._finish(key, trigger, TransferState.SKIPPED, "saving is disabled")
        else:
            self._gate.check(Permission.SAVE, actor_id)

        snapshot = await self._contexts.pending_snapshot(key)
        messages = (
            [m for m in snapshot.messages if m.role in TRANSFERABLE_ROLES] if snapshot else []
        )
        if not messages:
            return self._finish(key, trigger, TransferState.SKIPPED, "no pending messages")

        decision = self._decisions.score(
            messages, importance=options.importance, category=options.category
        )
        if not decision.should_save:
            return self._finish(
                key, trigger, TransferState.SKIPPED, decision.reasoning, decision, len(messages)
            )

        self._states[key] = TransferState.EMBEDDING
        content = await self._summarizer.compose(
            messages, decision, use_model=self._gate.config.features.llm_summaries
        )
        owner = owner_for(key, options.guild_id)
        decision, record = await self._embed_and_persist(
            key,
            content,
            decision,
            owner,
            extra_tags=options.tags,
            metadata=self._transfer_metadata(key, trigger, messages, decision),
        )
        if record is None:
            return self._finish(
                key, trigger, TransferState.SKIPPED, decision.reasoning, decision, len(messages)
            )

        await self._contexts.mark_transferred(key, snapshot.through_seq)
        result = self._finish(
            key,
            trigger,
            TransferState.DONE,
            f"stored as {record.id}",
            decision,
            len(messages),
            memory_id=record.id,
        )
        await self._link(record)
        return result

    # -- Explicit save ---------------------------------------------------------

    async def save(
        self,
        content: str,
        *,
        owner: MemoryOwner | None = None,
        importance: int | None = None,
        category: str | None = None,
        tags: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> SaveResult:
        """Store *content* directly, bypassing the buffers.

        The caller's importance and category override the heuristics;
        near-duplicates are still suppressed.
        """
        self._gate.check(Permission.SAVE, actor_id)
        if not content or not content.strip():
            raise ValidationError("Memory content must not be empty")
        if importance is not None and not 1 <= importance <= 10:
            raise ValidationError(f"Importance must be between 1 and 10, got {importance}")

        message = ConversationMessage(
            author_id=(owner.user_id if owner and owner.user_id else actor_id) or "unknown",
            content=content.strip(),
            role="user",
        )
        decision = self._decisions.score([message], importance=importance, category=category)
        if not decision.should_save:
            return SaveResult(decision=decision)

        meta = {
            "source": "explicit",
            "facts": list(decision.facts),
            "priority": decision.retention_priority,
            "memory_type": decision.memory_type,
            "sentiment": decision.sentiment,
            "confidence": decision.confidence,
        }
        meta.update(metadata or {})
        decision, record = await self._embed_and_persist(
            None, content.strip(), decision, owner, extra_tags=tags, metadata=meta
        )
        if record is not None:
            await self._link(record)
        return SaveResult(decision=decision, record=record)

    # -- Internal --------------------------------------------------------------

    async def _embed_and_persist(
        self,
        key: ContextKey | None,
        content: str,
        decision: MemoryDecision,
        owner: MemoryOwner | None,
        *,
        extra_tags: Iterable[str],
        metadata: dict[str, Any],
    ) -> tuple[MemoryDecision, MemoryRecord | None]:
        embedding = await self._embeddings.embed(content)

        # Duplicate check and insert for one owner run one at a time.
        async with self._owner_locks.hold(owner or MemoryOwner()):
            return await self._persist_unique(
                key, content, embedding, decision, owner, extra_tags, metadata
            )

    async def _persist_unique(
        self,
        key: ContextKey | None,
        content: str,
        embedding: list[float],
        decision: MemoryDecision,
        owner: MemoryOwner | None,
        extra_tags: Iterable[str],
        metadata: dict[str, Any],
    ) -> tuple[MemoryDecision, MemoryRecord | None]:
        if key is not None:
            self._states[key] = TransferState.DUPLICATE_CHECK
        config = self._gate.config
        similar = await self._store.find_similar(
            embedding,
            top_k=DUPLICATE_CANDIDATES,
            min_similarity=config.duplicate_threshold,
            owner=owner,
        )
        decision = self._decisions.apply_duplicate_check(
            decision, embedding, [m.record for m in similar]
        )
        if not decision.should_save:
            logger.info("Suppressed duplicate of %s", decision.duplicate_of)
            return decision, None

        if key is not None:
            self._states[key] = TransferState.PERSISTING
        record = await self._store.create_with_embedding(
            content,
            embedding,
            owner,
            importance=_record_importance(decision.importance),
            category=decision.category,
            tags=[*decision.tags, *extra_tags],
            metadata=metadata,
        )
        return decision, record

    async def _link(self, record: MemoryRecord) -> None:
        if self._mapper is None or not self._gate.config.features.relationships:
            return
        try:
            await self._mapper.link_similar(
                record, self._gate.config.relationship_similarity_threshold
            )
        except Exception:
            logger.warning("Auto-linking failed for memory %s", record.id, exc_info=True)

    def _finish(
        self,
        key: ContextKey,
        trigger: TransferTrigger,
        state: TransferState,
        reason: str,
        decision: MemoryDecision | None = None,
        considered: int = 0,
        *,
        memory_id: str | None = None,
    ) -> TransferResult:
        self._states[key] = state
        logger.info("Transfer %s for %s (%s): %s", state, key, trigger, reason)
        return TransferResult(
            key=key,
            trigger=trigger,
            state=state,
            reason=reason,
            decision=decision,
            memory_id=memory_id,
            messages_considered=considered,
        )

    @staticmethod
    def _transfer_metadata(
        key: ContextKey,
        trigger: TransferTrigger,
        messages: Sequence[ConversationMessage],
        decision: MemoryDecision,
    ) -> dict[str, Any]:
        return {
            "source": "transfer",
            "trigger": str(trigger),
            "context": str(key),
            "message_count": len(messages),
            "participants": sorted({m.author_id for m in messages}),
            "first_message_at": messages[0].timestamp.isoformat(),
            "last_message_at": messages[-1].timestamp.isoformat(),
            "facts": list(decision.facts),
            "priority": decision.retention_priority,
            "memory_type": decision.memory_type,
            "sentiment": decision.sentiment,
            "topics": list(decision.topics),
            "confidence": decision.confidence,
        }
