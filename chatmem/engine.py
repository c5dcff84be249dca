"""MemoryEngine: composition root and lifecycle for the memory system.

The engine is constructed explicitly by whoever owns the process (see
``chatmem.main``), started with ``init()`` and stopped with
``shutdown()``. It wires the stores, gateway, decision engine, context
manager and transfer pipeline together, runs the background jobs on
APScheduler, and exposes the public operations.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from chatmem.config import settings as default_settings
from chatmem.context.manager import ShortTermContextManager
from chatmem.errors import ValidationError
from chatmem.memory.decision import DecisionEngine, recall_score
from chatmem.memory.embeddings import EmbeddingGateway, HttpEmbeddingProvider
from chatmem.memory.gate import ConfigGate, MemoryConfig, Permission
from chatmem.memory.models import normalize_expiry
from chatmem.memory.relationships import RelationshipMapper, RelationshipStore
from chatmem.memory.store import MemoryStore
from chatmem.transfer.models import TransferOptions, TransferTrigger
from chatmem.transfer.pipeline import TransferPipeline
from chatmem.transfer.summary import ConversationSummarizer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence
    from pathlib import Path

    from chatmem.config import Settings
    from chatmem.context.history import HistorySource
    from chatmem.context.models import ContextKey, ContextScope, ConversationMessage
    from chatmem.memory.embeddings import EmbeddingProvider
    from chatmem.memory.models import (
        ConnectionSuggestion,
        MemoryOwner,
        MemoryRelationship,
        RelatedMemory,
        RelationshipType,
        SimilarityMatch,
    )
    from chatmem.memory.store import ConsolidationGroup
    from chatmem.transfer.models import SaveResult, TransferResult

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "chatmem-idle-sweep"
CONSOLIDATION_JOB_ID = "chatmem-consolidation"


class MemoryEngine:
    """Short-term buffers plus long-term memory behind one object.

    Args:
        config: Initial runtime configuration. Defaults to one built from
            *settings*.
        settings: Process settings (paths, provider credentials, intervals).
        db_path: SQLite file for records and relationships.
        embedding_provider: Overrides the HTTP provider built from settings.
            Pass ``None`` with *use_fallback_embeddings* to run offline.
        chat: ``complete_text``-compatible callable for summaries.
        history_source: Seeds new buffers from platform history.
        bot_id: The assistant's own author id.
        clock: Monotonic clock for idle tracking.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        settings: Settings | None = None,
        db_path: Path | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        use_fallback_embeddings: bool = False,
        chat: Callable[..., Awaitable[str]] | None = None,
        history_source: HistorySource | None = None,
        bot_id: str | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        s = settings or default_settings
        self._settings = s
        self.gate = ConfigGate(config or MemoryConfig.from_settings(s))

        provider = embedding_provider
        if provider is None and not use_fallback_embeddings and s.embedding_api_key:
            provider = HttpEmbeddingProvider(
                api_url=s.embedding_api_url,
                api_key=s.embedding_api_key,
                model=s.embedding_model,
                dimension=s.embedding_dimension,
                timeout=s.embedding_timeout_seconds,
            )
        if provider is None:
            logger.warning("No embedding provider configured, using fallback vectors")
        self.embeddings = EmbeddingGateway(
            provider,
            s.embedding_dimension,
            max_retries=s.embedding_max_retries,
            backoff_seconds=s.embedding_backoff_seconds,
            cache_size=s.embedding_cache_size,
        )

        path = db_path or s.database_path
        self.store = MemoryStore(
            path,
            s.embedding_dimension,
            max_retries=s.store_max_retries,
            backoff_seconds=s.store_backoff_seconds,
        )
        self.relationship_store = RelationshipStore(
            path, max_retries=s.store_max_retries, backoff_seconds=s.store_backoff_seconds
        )
        self.mapper = RelationshipMapper(self.relationship_store, self.store, self.gate)
        self.decisions = DecisionEngine(self.gate, self.embeddings.embed)

        manager_kwargs: dict[str, Any] = {
            "bot_id": bot_id,
            "command_prefix": s.command_prefix,
            "seed_limit": s.history_seed_limit,
        }
        if clock is not None:
            manager_kwargs["clock"] = clock
        self.contexts = ShortTermContextManager(self.gate, history_source, **manager_kwargs)
        self.pipeline = TransferPipeline(
            self.contexts,
            self.decisions,
            self.embeddings,
            self.store,
            self.gate,
            summarizer=ConversationSummarizer(chat, s.summary_model),
            mapper=self.mapper,
        )
        self.contexts.attach_pipeline(self.pipeline)
        self.contexts.set_overflow_handler(self._schedule_overflow_transfer)

        self._scheduler: AsyncIOScheduler | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def init(self) -> None:
        """Start the idle sweep (and consolidation) jobs."""
        if self._running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.sweep_idle,
            trigger=IntervalTrigger(seconds=self._settings.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Idle context sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.gate.config.features.consolidation:
            self._scheduler.add_job(
                self._scheduled_consolidation,
                trigger=IntervalTrigger(seconds=self._settings.consolidation_interval_seconds),
                id=CONSOLIDATION_JOB_ID,
                name="Memory consolidation",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Memory engine started (sweep every %.0fs, consolidation %s)",
            self._settings.sweep_interval_seconds,
            "on" if self.gate.config.features.consolidation else "off",
        )

    async def shutdown(self, *, transfer_pending: bool = True) -> None:
        """Stop background jobs and flush buffers to long-term memory.

        Buffers are transferred best-effort (idle trigger semantics) when
        automatic transfer is enabled; failures are logged.
        """
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        if transfer_pending and self.gate.config.automatic_transfer:
            for key in self.contexts.keys():
                await self.pipeline.transfer(key.scope, key.id, trigger=TransferTrigger.IDLE)

        self._running = False
        logger.info("Memory engine stopped")

    # -- Short-term context ----------------------------------------------------

    async def append(
        self,
        scope: ContextScope | str,
        context_id: str,
        message: ConversationMessage,
        channel_ref: Any = None,
    ) -> int:
        return await self.contexts.append(scope, context_id, message, channel_ref)

    def get_history(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        roles: Iterable[str] | None = None,
        limit: int | None = None,
        include_system: bool = False,
    ) -> list[ConversationMessage]:
        return self.contexts.get_history(
            scope, context_id, roles=roles, limit=limit, include_system=include_system
        )

    async def clear(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        transfer_first: bool = True,
        actor_id: str | None = None,
    ) -> int:
        return await self.contexts.clear(
            scope, context_id, transfer_first=transfer_first, actor_id=actor_id
        )

    async def sweep_idle(self) -> int:
        try:
            return await self.contexts.sweep_idle()
        except Exception:
            logger.exception("Idle sweep failed")
            return 0

    # -- Long-term memory ------------------------------------------------------

    async def transfer(
        self,
        scope: ContextScope | str,
        context_id: str,
        *,
        importance: float | None = None,
        category: str | None = None,
        guild_id: str | None = None,
        actor_id: str | None = None,
    ) -> TransferResult:
        """Manually promote a buffer. Waits for an in-flight transfer of the same key."""
        return await self.pipeline.transfer(
            scope,
            context_id,
            trigger=TransferTrigger.MANUAL,
            options=TransferOptions(importance=importance, category=category, guild_id=guild_id),
            actor_id=actor_id,
        )

    async def save_memory(
        self,
        content: str,
        *,
        owner: MemoryOwner | None = None,
        importance: int | None = None,
        category: str | None = None,
        tags: Iterable[str] = (),
        facts: Iterable[str] | None = None,
        priority: str | None = None,
        expires_at: datetime | str | None = None,
        actor_id: str | None = None,
    ) -> SaveResult:
        """Store a memory directly, e.g. on an explicit "remember this" request."""
        metadata: dict[str, Any] = {}
        if facts is not None:
            metadata["facts"] = list(facts)
        metadata["priority"] = priority or "medium"
        if expires_at is not None:
            metadata["expires_at"] = normalize_expiry(expires_at)
        return await self.pipeline.save(
            content,
            owner=owner,
            importance=importance,
            category=category,
            tags=tags,
            metadata=metadata,
            actor_id=actor_id,
        )

    async def find_similar(
        self,
        query: str | Sequence[float],
        *,
        owner: MemoryOwner | None = None,
        top_k: int = 5,
        min_similarity: float = 0.0,
        tags: Iterable[str] | None = None,
        importance_threshold: int | None = None,
        actor_id: str | None = None,
    ) -> list[SimilarityMatch]:
        """Similarity search by text or by a precomputed embedding."""
        self.gate.check(Permission.SEARCH, actor_id)
        embedding = await self.embeddings.embed(query) if isinstance(query, str) else query
        matches = await self.store.find_similar(
            embedding,
            top_k=top_k,
            min_similarity=min_similarity,
            owner=owner,
            tags=tags,
            importance_threshold=importance_threshold,
        )
        await self.store.record_access(m.record.id for m in matches)
        return matches

    async def recall(
        self,
        query: str,
        *,
        owner: MemoryOwner | None = None,
        limit: int | None = None,
        actor_id: str | None = None,
    ) -> list[SimilarityMatch]:
        """Memories relevant to *query*, re-ranked by recency, frequency and importance.

        Only hits at or above ``memory_relevance_threshold`` are considered.
        """
        self.gate.check(Permission.SEARCH, actor_id)
        config = self.gate.config
        limit = limit or config.max_relevant_memories
        embedding = await self.embeddings.embed(query)
        matches = await self.store.find_similar(
            embedding,
            top_k=limit * 2,
            min_similarity=config.memory_relevance_threshold,
            owner=owner,
        )
        now = datetime.now(UTC)
        ranked = sorted(matches, key=lambda m: recall_score(m, now), reverse=True)[:limit]
        await self.store.record_access(m.record.id for m in ranked)
        return ranked

    async def delete_memory(self, memory_id: str, *, actor_id: str | None = None) -> bool:
        self.gate.check(Permission.DELETE, actor_id)
        deleted = await self.store.delete(memory_id)
        if deleted:
            await self.relationship_store.delete_for_memory(memory_id)
        return deleted

    async def consolidate(
        self,
        *,
        owner: MemoryOwner | None = None,
        threshold: float | None = None,
        max_groups: int = 10,
        dry_run: bool = False,
        actor_id: str | None = None,
    ) -> list[ConsolidationGroup]:
        """Fold near-duplicate records into their strongest member.

        Nothing is deleted: duplicates are marked ``consolidated_into`` and
        drop out of searches. With *dry_run* the groups are only returned.
        """
        self.gate.check(Permission.CONSOLIDATE, actor_id)
        threshold = self.gate.config.consolidation_threshold if threshold is None else threshold
        if not 0.5 <= threshold <= 1.0:
            raise ValidationError(
                f"Consolidation threshold must be between 0.5 and 1, got {threshold}"
            )
        groups = await self.store.find_consolidation_groups(threshold, owner, max_groups)
        if not dry_run:
            for group in groups:
                await self.store.mark_consolidated(group)
        logger.info(
            "Consolidation %s: %d group(s) at threshold %.2f",
            "preview" if dry_run else "applied",
            len(groups),
            threshold,
        )
        return groups

    async def analytics(
        self, *, owner: MemoryOwner | None = None, actor_id: str | None = None
    ) -> dict[str, Any]:
        self.gate.check(Permission.ANALYTICS, actor_id)
        report = await self.store.analytics(owner)
        report["relationships"] = await self.relationship_store.count()
        return report

    # -- Relationships ---------------------------------------------------------

    async def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType | str,
        strength: float,
        reasoning: str = "",
        *,
        actor_id: str | None = None,
    ) -> MemoryRelationship:
        return await self.mapper.create_relationship(
            source_id, target_id, relationship_type, strength, reasoning, actor_id=actor_id
        )

    async def find_related(
        self,
        memory_id: str,
        *,
        types: Iterable[RelationshipType] | None = None,
        min_strength: float = 0.3,
        max_results: int = 10,
        include_indirect: bool = False,
        actor_id: str | None = None,
    ) -> list[RelatedMemory]:
        return await self.mapper.find_related(
            memory_id,
            types=types,
            min_strength=min_strength,
            max_results=max_results,
            include_indirect=include_indirect,
            actor_id=actor_id,
        )

    async def suggest_connections(
        self,
        memory_id: str,
        *,
        types: Iterable[RelationshipType] | None = None,
        actor_id: str | None = None,
    ) -> list[ConnectionSuggestion]:
        return await self.mapper.suggest_connections(memory_id, types=types, actor_id=actor_id)

    # -- Configuration and stats -----------------------------------------------

    async def update_config(self, **changes: Any) -> MemoryConfig:
        """Validate and apply configuration changes atomically."""
        return await self.gate.update(changes)

    def get_stats(self) -> dict[str, Any]:
        active = self.contexts.active_contexts
        buffered = self.contexts.buffered_messages
        return {
            "active_contexts": active,
            "buffered_messages": buffered,
            "average_buffer_size": round(buffered / active, 2) if active else 0.0,
            "in_flight_transfers": self.pipeline.in_flight,
            "background_transfers": len(self._background),
            "embedding_cache_size": self.embeddings.cache_size,
            "embedding_fallbacks": self.embeddings.fallback_count,
            "running": self._running,
        }

    # -- Internal --------------------------------------------------------------

    def _schedule_overflow_transfer(self, key: ContextKey) -> None:
        if self.pipeline.is_busy(key.scope, key.id):
            return
        task = asyncio.create_task(
            self.pipeline.transfer(key.scope, key.id, trigger=TransferTrigger.OVERFLOW)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _scheduled_consolidation(self) -> None:
        try:
            await self.consolidate()
        except Exception:
            logger.exception("Scheduled consolidation failed")
