"""MemoryStore: aiosqlite persistence and similarity search for memory records."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import aiosqlite

from chatmem.config import settings
from chatmem.errors import DimensionMismatch, StoreUnavailable, ValidationError
from chatmem.memory.models import MemoryOwner, MemoryRecord, SimilarityMatch, make_id, utc_now
from chatmem.memory.vectors import cosine_similarity
from chatmem.retry import retry_async

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    importance INTEGER NOT NULL CHECK (importance BETWEEN 1 AND 10),
    category TEXT NOT NULL DEFAULT 'context',
    tags TEXT NOT NULL DEFAULT '[]',
    owner_user_id TEXT,
    owner_guild_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_memories_owner_user ON memories (owner_user_id);
CREATE INDEX IF NOT EXISTS idx_memories_owner_guild ON memories (owner_guild_id);
"""

_COLUMNS = (
    "id, content, embedding, dimension, importance, category, tags, owner_user_id, "
    "owner_guild_id, metadata, created_at, updated_at, access_count, last_accessed_at"
)
_PLACEHOLDERS = ", ".join("?" * 14)


@dataclass
class ConsolidationGroup:
    """A primary record and the near-duplicates that would fold into it."""

    primary: MemoryRecord
    duplicates: list[SimilarityMatch] = field(default_factory=list)

    @property
    def duplicate_ids(self) -> list[str]:
        return [m.record.id for m in self.duplicates]


def _owner_clause(owner: MemoryOwner | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if owner is not None:
        if owner.user_id is not None:
            clauses.append("owner_user_id = ?")
            params.append(owner.user_id)
        if owner.guild_id is not None:
            clauses.append("owner_guild_id = ?")
            params.append(owner.guild_id)
    return " AND ".join(clauses), params


class MemoryStore:
    """Persists memory records in SQLite and answers similarity queries.

    Similarity search is a linear scan over the records matching the
    scalar filters. Pass an explicit *db_path* for test isolation
    (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(
        self,
        db_path: Path | None = None,
        dimension: int | None = None,
        *,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self._db_path = db_path or settings.database_path
        self._dimension = dimension or settings.embedding_dimension
        self._max_retries = settings.store_max_retries if max_retries is None else max_retries
        self._backoff_seconds = (
            settings.store_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._initialised = False

    @property
    def dimension(self) -> int:
        return self._dimension

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
        """Run *op* on a fresh connection, retrying operational errors."""

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
                label=f"MemoryStore.{label}",
            )
        except aiosqlite.OperationalError as exc:
            raise StoreUnavailable(f"{label} failed: {exc}") from exc

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self._dimension:
            logger.error(
                "Embedding dimension mismatch: store expects %d, got %d",
                self._dimension,
                len(vector),
            )
            raise DimensionMismatch(self._dimension, len(vector))

    async def _select(
        self,
        owner: MemoryOwner | None = None,
        importance_threshold: int | None = None,
        category: str | None = None,
    ) -> list[MemoryRecord]:
        where, params = _owner_clause(owner)
        clauses = [where] if where else []
        if importance_threshold is not None:
            clauses.append("importance >= ?")
            params.append(importance_threshold)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        sql = f"SELECT {_COLUMNS} FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"

        async def op(db: aiosqlite.Connection) -> list[MemoryRecord]:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [MemoryRecord.from_row(row) for row in rows]

        return await self._run("select", op)

    # -- CRUD ------------------------------------------------------------------

    async def create_with_embedding(
        self,
        content: str,
        embedding: Sequence[float],
        owner: MemoryOwner | None = None,
        *,
        importance: int,
        category: str = "context",
        tags: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Validate and insert a new record. Returns the stored record."""
        if not content or not content.strip():
            raise ValidationError("Memory content must not be empty")
        if isinstance(importance, bool) or not isinstance(importance, int):
            raise ValidationError(f"Importance must be an integer, got {importance!r}")
        if not 1 <= importance <= 10:
            raise ValidationError(f"Importance must be between 1 and 10, got {importance}")
        self._check_dimension(embedding)

        owner = owner or MemoryOwner()
        record = MemoryRecord(
            id=make_id(),
            content=content.strip(),
            embedding=list(embedding),
            importance=importance,
            category=category or "context",
            tags=sorted(set(tags)),
            owner_user_id=owner.user_id,
            owner_guild_id=owner.guild_id,
            metadata=dict(metadata or {}),
        )

        async def op(db: aiosqlite.Connection) -> None:
            await db.execute(
                f"INSERT INTO memories ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                record.to_row(),
            )
            await db.commit()

        await self._run("create", op)
        logger.info(
            "Stored memory %s (category=%s, importance=%d)", record.id, record.category, importance
        )
        return record

    async def get(self, memory_id: str) -> MemoryRecord | None:
        """Fetch a record by ID, or None if not found."""

        async def op(db: aiosqlite.Connection) -> MemoryRecord | None:
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
            row = await cursor.fetchone()
            return MemoryRecord.from_row(row) if row else None

        return await self._run("get", op)

    async def list_records(
        self,
        owner: MemoryOwner | None = None,
        *,
        include_consolidated: bool = False,
        include_expired: bool = False,
    ) -> list[MemoryRecord]:
        """All records for *owner*, oldest first."""
        records = await self._select(owner)
        return [
            r
            for r in records
            if (include_consolidated or not r.consolidated)
            and (include_expired or not r.is_expired())
        ]

    async def update_metadata(self, memory_id: str, patch: dict[str, Any]) -> MemoryRecord | None:
        """Merge *patch* into a record's metadata. Keys set to None are removed."""

        async def op(db: aiosqlite.Connection) -> MemoryRecord | None:
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            record = MemoryRecord.from_row(row)
            for key, value in patch.items():
                if value is None:
                    record.metadata.pop(key, None)
                else:
                    record.metadata[key] = value
            record.updated_at = utc_now()
            await db.execute(
                "UPDATE memories SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(record.metadata), record.updated_at, memory_id),
            )
            await db.commit()
            return record

        return await self._run("update_metadata", op)

    async def record_access(self, memory_ids: Iterable[str]) -> None:
        """Bump access counters for records returned by a search."""
        ids = list(memory_ids)
        if not ids:
            return
        now = utc_now()

        async def op(db: aiosqlite.Connection) -> None:
            await db.executemany(
                "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? "
                "WHERE id = ?",
                [(now, memory_id) for memory_id in ids],
            )
            await db.commit()

        await self._run("record_access", op)

    async def delete(self, memory_id: str) -> bool:
        """Hard-delete a record. Returns True if a row was removed."""

        async def op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            await db.commit()
            return cursor.rowcount > 0

        deleted = await self._run("delete", op)
        if deleted:
            logger.info("Deleted memory %s", memory_id)
        return deleted

    async def count(
        self,
        owner: MemoryOwner | None = None,
        *,
        category: str | None = None,
        include_consolidated: bool = True,
    ) -> int:
        """Number of records matching the filter."""
        if not include_consolidated:
            records = await self._select(owner, category=category)
            return sum(1 for r in records if not r.consolidated)

        where, params = _owner_clause(owner)
        clauses = [where] if where else []
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        sql = "SELECT COUNT(*) FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        async def op(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
            return int(row[0])

        return await self._run("count", op)

    # -- Similarity ------------------------------------------------------------

    async def find_similar(
        self,
        query_embedding: Sequence[float],
        *,
        top_k: int = 5,
        min_similarity: float = 0.0,
        owner: MemoryOwner | None = None,
        tags: Iterable[str] | None = None,
        importance_threshold: int | None = None,
        category: str | None = None,
        include_consolidated: bool = False,
        include_expired: bool = False,
        exclude_ids: Iterable[str] = (),
    ) -> list[SimilarityMatch]:
        """Records ranked by cosine similarity to *query_embedding*.

        Ordering is similarity descending, then importance descending,
        then most recent ``created_at`` first. Records tagged with none of
        *tags* (when given) are skipped.
        """
        self._check_dimension(query_embedding)
        wanted_tags = set(tags) if tags else None
        excluded = set(exclude_ids)

        records = await self._select(owner, importance_threshold, category)
        matches: list[SimilarityMatch] = []
        for record in records:
            if record.id in excluded:
                continue
            if not include_consolidated and record.consolidated:
                continue
            if not include_expired and record.is_expired():
                continue
            if wanted_tags is not None and not wanted_tags.intersection(record.tags):
                continue
            similarity = cosine_similarity(query_embedding, record.embedding)
            if similarity >= min_similarity:
                matches.append(SimilarityMatch(record=record, similarity=similarity))

        matches.sort(key=lambda m: m.record.created_at, reverse=True)
        matches.sort(key=lambda m: (m.similarity, m.record.importance), reverse=True)
        return matches[:top_k]

    # -- Consolidation ---------------------------------------------------------

    async def find_consolidation_groups(
        self,
        threshold: float,
        owner: MemoryOwner | None = None,
        max_groups: int = 10,
    ) -> list[ConsolidationGroup]:
        """Greedy grouping of near-duplicate records.

        Records are visited by importance then recency; each unvisited
        record becomes a primary and absorbs every later unvisited record
        of the same owner whose similarity exceeds *threshold*.
        """
        records = await self.list_records(owner)
        records.sort(key=lambda r: r.created_at, reverse=True)
        records.sort(key=lambda r: r.importance, reverse=True)

        visited: set[str] = set()
        groups: list[ConsolidationGroup] = []
        for i, primary in enumerate(records):
            if primary.id in visited:
                continue
            group = ConsolidationGroup(primary=primary)
            for other in records[i + 1 :]:
                if other.id in visited or other.owner != primary.owner:
                    continue
                similarity = cosine_similarity(primary.embedding, other.embedding)
                if similarity > threshold:
                    group.duplicates.append(SimilarityMatch(record=other, similarity=similarity))
            if group.duplicates:
                visited.add(primary.id)
                visited.update(group.duplicate_ids)
                groups.append(group)
                if len(groups) >= max_groups:
                    break
        return groups

    async def mark_consolidated(self, group: ConsolidationGroup) -> None:
        """Record a consolidation without deleting anything."""
        now = utc_now()
        merged_from = sorted(
            set(group.primary.metadata.get("consolidated_from", [])) | set(group.duplicate_ids)
        )
        await self.update_metadata(
            group.primary.id,
            {"consolidated": True, "consolidated_from": merged_from, "consolidated_at": now},
        )
        for duplicate_id in group.duplicate_ids:
            await self.update_metadata(
                duplicate_id, {"consolidated_into": group.primary.id, "consolidated_at": now}
            )
        logger.info(
            "Consolidated %d memory(ies) into %s", len(group.duplicates), group.primary.id
        )

    # -- Analytics -------------------------------------------------------------

    async def analytics(self, owner: MemoryOwner | None = None) -> dict[str, Any]:
        """Aggregate counts for reporting."""
        records = await self._select(owner)
        active = [r for r in records if not r.consolidated]
        categories = Counter(r.category for r in active)
        tags = Counter(tag for r in active for tag in r.tags)
        buckets = {"low": 0, "medium": 0, "high": 0, "critical": 0}
        for r in active:
            if r.importance >= 9:
                buckets["critical"] += 1
            elif r.importance >= 7:
                buckets["high"] += 1
            elif r.importance >= 4:
                buckets["medium"] += 1
            else:
                buckets["low"] += 1
        return {
            "total_memories": len(records),
            "active_memories": len(active),
            "consolidated_memories": len(records) - len(active),
            "by_category": dict(categories.most_common()),
            "importance_distribution": buckets,
            "average_importance": (
                round(sum(r.importance for r in active) / len(active), 2) if active else 0.0
            ),
            "top_tags": [tag for tag, _ in tags.most_common(10)],
            "total_accesses": sum(r.access_count for r in records),
        }
