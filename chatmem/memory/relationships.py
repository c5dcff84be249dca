"""Relationship graph between memory records.

``RelationshipStore`` persists typed, weighted edges (one per source,
target and type). ``RelationshipMapper`` layers validation, graph
traversal and connection suggestions on top of it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import aiosqlite

from chatmem.config import settings
from chatmem.errors import StoreUnavailable, ValidationError
from chatmem.memory.gate import ConfigGate, Permission
from chatmem.memory.models import (
    ConnectionSuggestion,
    MemoryRecord,
    MemoryRelationship,
    RelatedMemory,
    RelationshipType,
    make_id,
    utc_now,
)
from chatmem.memory.vectors import cosine_similarity
from chatmem.retry import retry_async

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from pathlib import Path

    from chatmem.memory.store import MemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_relationships (
    id TEXT PRIMARY KEY,
    source_memory_id TEXT NOT NULL,
    target_memory_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    strength REAL NOT NULL CHECK (strength BETWEEN 0 AND 1),
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (source_memory_id, target_memory_id, relationship_type)
);
CREATE INDEX IF NOT EXISTS idx_relationships_source ON memory_relationships (source_memory_id);
CREATE INDEX IF NOT EXISTS idx_relationships_target ON memory_relationships (target_memory_id);
"""

_COLUMNS = (
    "id, source_memory_id, target_memory_id, relationship_type, strength, metadata, "
    "created_at, updated_at"
)

SIMILARITY_SUGGESTION_THRESHOLD = 0.7


class RelationshipStore:
    """Persists memory relationships in SQLite.

    Every operation runs on its own connection and retries operational
    errors with backoff before surfacing ``StoreUnavailable``.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self._db_path = db_path or settings.database_path
        self._max_retries = settings.store_max_retries if max_retries is None else max_retries
        self._backoff_seconds = (
            settings.store_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            try:
                await db.executescript(_SCHEMA)
                await db.commit()
            except Exception:
                await db.close()
                raise
            self._initialised = True
        return db

    async def _run(self, label: str, op: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def attempt() -> T:
            db = await self._connect()
            try:
                return await op(db)
            finally:
                await db.close()

        try:
            return await retry_async(
                attempt,
                retries=self._max_retries,
                base_seconds=self._backoff_seconds,
                retry_on=(aiosqlite.OperationalError,),
                label=f"RelationshipStore.{label}",
            )
        except aiosqlite.OperationalError as exc:
            raise StoreUnavailable(f"{label} failed: {exc}") from exc

    # -- CRUD ------------------------------------------------------------------

    async def upsert(self, relationship: MemoryRelationship) -> tuple[MemoryRelationship, bool]:
        """Insert an edge or update the existing one for the same key.

        Returns the stored edge and whether it was newly created.
        """

        async def op(db: aiosqlite.Connection) -> MemoryRelationship:
            await db.execute(
                f"""
                INSERT INTO memory_relationships ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_memory_id, target_memory_id, relationship_type)
                DO UPDATE SET strength = excluded.strength,
                              metadata = excluded.metadata,
                              updated_at = excluded.updated_at
                """,
                relationship.to_row(),
            )
            await db.commit()
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM memory_relationships
                WHERE source_memory_id = ? AND target_memory_id = ? AND relationship_type = ?
                """,
                (
                    relationship.source_memory_id,
                    relationship.target_memory_id,
                    str(relationship.type),
                ),
            )
            return MemoryRelationship.from_row(await cursor.fetchone())

        stored = await self._run("upsert", op)
        return stored, stored.id == relationship.id

    async def edges_for(
        self,
        memory_id: str,
        types: Iterable[RelationshipType] | None = None,
        min_strength: float = 0.0,
    ) -> list[MemoryRelationship]:
        """Edges touching *memory_id* in either direction, strongest first."""
        sql = (
            f"SELECT {_COLUMNS} FROM memory_relationships "
            "WHERE (source_memory_id = ? OR target_memory_id = ?) AND strength >= ?"
        )
        params: list[Any] = [memory_id, memory_id, min_strength]
        type_list = [str(t) for t in types] if types else []
        if type_list:
            sql += f" AND relationship_type IN ({', '.join('?' for _ in type_list)})"
            params.extend(type_list)
        sql += " ORDER BY strength DESC, updated_at DESC"

        async def op(db: aiosqlite.Connection) -> list[MemoryRelationship]:
            cursor = await db.execute(sql, params)
            return [MemoryRelationship.from_row(row) for row in await cursor.fetchall()]

        return await self._run("edges_for", op)

    async def delete_for_memory(self, memory_id: str) -> int:
        """Remove every edge touching *memory_id*. Returns the number removed."""

        async def op(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "DELETE FROM memory_relationships"
                " WHERE source_memory_id = ? OR target_memory_id = ?",
                (memory_id, memory_id),
            )
            await db.commit()
            return cursor.rowcount

        return await self._run("delete_for_memory", op)

    async def count(self) -> int:
        async def op(db: aiosqlite.Connection) -> int:
            cursor = await db.execute("SELECT COUNT(*) FROM memory_relationships")
            row = await cursor.fetchone()
            return int(row[0])

        return await self._run("count", op)


def _seconds_between(a: str, b: str) -> float:
    return abs((datetime.fromisoformat(a) - datetime.fromisoformat(b)).total_seconds())


class RelationshipMapper:
    """Creates, traverses and suggests relationships between memories.

    Args:
        relationships: Edge persistence.
        memories: Record store, used to validate endpoints and to find
            suggestion candidates.
        gate: Permission gate.
        temporal_window_seconds: Records created within this window of
            each other are suggested as temporally related.
    """

    def __init__(
        self,
        relationships: RelationshipStore,
        memories: MemoryStore,
        gate: ConfigGate,
        *,
        temporal_window_seconds: float = 3600.0,
    ) -> None:
        self._relationships = relationships
        self._memories = memories
        self._gate = gate
        self._temporal_window = temporal_window_seconds

    async def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType | str,
        strength: float,
        reasoning: str = "",
        *,
        metadata: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> MemoryRelationship:
        """Create or update the edge for (source, target, type).

        Undirected types (similar, categorical) store their endpoints in
        sorted order so A-B and B-A resolve to the same edge.
        """
        self._gate.check(Permission.RELATIONSHIPS, actor_id)
        try:
            rel_type = RelationshipType(relationship_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown relationship type: {relationship_type}") from exc
        if not 0.0 <= strength <= 1.0:
            raise ValidationError(f"Strength must be between 0 and 1, got {strength}")
        if source_id == target_id:
            raise ValidationError("A memory cannot be related to itself")
        for memory_id in (source_id, target_id):
            if await self._memories.get(memory_id) is None:
                raise ValidationError(f"Memory not found: {memory_id}")

        if rel_type.undirected and target_id < source_id:
            source_id, target_id = target_id, source_id

        meta = dict(metadata or {})
        if reasoning:
            meta["reasoning"] = reasoning
        stored, created = await self._relationships.upsert(
            MemoryRelationship(
                id=make_id(),
                source_memory_id=source_id,
                target_memory_id=target_id,
                type=rel_type,
                strength=strength,
                metadata=meta,
                updated_at=utc_now(),
            )
        )
        logger.info(
            "%s %s relationship %s -> %s (strength %.2f)",
            "Created" if created else "Updated",
            rel_type,
            source_id,
            target_id,
            strength,
        )
        return stored

    async def find_related(
        self,
        memory_id: str,
        *,
        types: Iterable[RelationshipType] | None = None,
        min_strength: float = 0.3,
        max_results: int = 10,
        include_indirect: bool = False,
        max_depth: int = 2,
        actor_id: str | None = None,
    ) -> list[RelatedMemory]:
        """Memories connected to *memory_id*.

        Direct neighbours come first, strongest first. With
        *include_indirect*, a breadth-first walk continues up to
        *max_depth* hops; an indirect strength is the product of the edge
        strengths along its path. The origin and nodes already on a path
        are never revisited.
        """
        self._gate.check(Permission.SEARCH, actor_id)
        type_list = list(types) if types else None

        direct: dict[str, RelatedMemory] = {}
        for edge in await self._relationships.edges_for(memory_id, type_list, min_strength):
            other = edge.other_end(memory_id)
            current = direct.get(other)
            if current is None or edge.strength > current.strength:
                direct[other] = RelatedMemory(
                    memory_id=other,
                    relationship_type=edge.type,
                    strength=edge.strength,
                    depth=1,
                    path=(memory_id, other),
                )
        results = sorted(direct.values(), key=lambda r: r.strength, reverse=True)

        if include_indirect and max_depth > 1:
            seen = {memory_id, *direct}
            frontier = results
            indirect: list[RelatedMemory] = []
            for depth in range(2, max_depth + 1):
                found: dict[str, RelatedMemory] = {}
                for node in frontier:
                    edges = await self._relationships.edges_for(
                        node.memory_id, type_list, min_strength
                    )
                    for edge in edges:
                        other = edge.other_end(node.memory_id)
                        if other in seen or other in node.path:
                            continue
                        strength = node.strength * edge.strength
                        current = found.get(other)
                        if current is None or strength > current.strength:
                            found[other] = RelatedMemory(
                                memory_id=other,
                                relationship_type=edge.type,
                                strength=strength,
                                depth=depth,
                                path=(*node.path, other),
                            )
                seen.update(found)
                frontier = list(found.values())
                indirect.extend(frontier)
                if not frontier:
                    break
            results.extend(sorted(indirect, key=lambda r: r.strength, reverse=True))

        return results[:max_results]

    async def suggest_connections(
        self,
        memory_id: str,
        *,
        types: Iterable[RelationshipType] | None = None,
        min_confidence: float = 0.4,
        max_suggestions: int = 5,
        actor_id: str | None = None,
    ) -> list[ConnectionSuggestion]:
        """Rank candidate edges to memories not yet connected to *memory_id*.

        Nothing is written; callers persist a suggestion with
        ``create_relationship``.
        """
        self._gate.check(Permission.SEARCH, actor_id)
        wanted = set(types) if types else {
            RelationshipType.SIMILAR,
            RelationshipType.CATEGORICAL,
            RelationshipType.TEMPORAL,
        }
        source = await self._memories.get(memory_id)
        if source is None:
            raise ValidationError(f"Memory not found: {memory_id}")

        connected = {e.other_end(memory_id) for e in await self._relationships.edges_for(memory_id)}
        candidates = await self._memories.list_records(source.owner)

        suggestions: list[ConnectionSuggestion] = []
        for candidate in candidates:
            if candidate.id == memory_id or candidate.id in connected:
                continue
            for rel_type, confidence, reasoning in self._score_candidate(source, candidate, wanted):
                if confidence >= min_confidence:
                    suggestions.append(
                        ConnectionSuggestion(
                            source_memory_id=memory_id,
                            target_memory_id=candidate.id,
                            relationship_type=rel_type,
                            confidence=round(confidence, 4),
                            reasoning=reasoning,
                        )
                    )

        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions[:max_suggestions]

    async def link_similar(
        self, record: MemoryRecord, threshold: float
    ) -> list[MemoryRelationship]:
        """Connect a freshly stored record to existing look-alikes with ``similar`` edges."""
        if not self._gate.allowed(Permission.RELATIONSHIPS):
            return []
        matches = await self._memories.find_similar(
            record.embedding,
            top_k=5,
            min_similarity=threshold,
            owner=record.owner,
            exclude_ids=[record.id],
        )
        created: list[MemoryRelationship] = []
        for match in matches:
            strength = round(min(max(match.similarity, 0.0), 1.0), 4)
            created.append(
                await self.create_relationship(
                    record.id,
                    match.record.id,
                    RelationshipType.SIMILAR,
                    strength,
                    f"auto-linked: similarity {strength:.2f}",
                    metadata={"provenance": "auto"},
                )
            )
        return created

    # -- Internal --------------------------------------------------------------

    def _score_candidate(
        self,
        source: MemoryRecord,
        candidate: MemoryRecord,
        wanted: set[RelationshipType],
    ) -> list[tuple[RelationshipType, float, str]]:
        scored: list[tuple[RelationshipType, float, str]] = []

        if RelationshipType.SIMILAR in wanted:
            similarity = cosine_similarity(source.embedding, candidate.embedding)
            if similarity > SIMILARITY_SUGGESTION_THRESHOLD:
                scored.append(
                    (RelationshipType.SIMILAR, similarity, f"semantic similarity {similarity:.2f}")
                )

        if (
            RelationshipType.CATEGORICAL in wanted
            and source.category == candidate.category
            and source.category != "context"
        ):
            shared = (set(source.tags) & set(candidate.tags)) - {source.category}
            confidence = min(0.5 + 0.1 * len(shared), 0.9)
            scored.append(
                (RelationshipType.CATEGORICAL, confidence, f"same category '{source.category}'")
            )

        if RelationshipType.TEMPORAL in wanted and self._temporal_window > 0:
            delta = _seconds_between(source.created_at, candidate.created_at)
            if delta <= self._temporal_window:
                confidence = 0.8 * (1 - delta / self._temporal_window)
                scored.append(
                    (RelationshipType.TEMPORAL, confidence, f"created {int(delta)}s apart")
                )

        return scored
