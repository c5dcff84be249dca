"""Long-term memory records, relationships and scoring decisions."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from chatmem.errors import ValidationError
from chatmem.memory.vectors import from_blob, to_blob

logger = logging.getLogger(__name__)


def make_id() -> str:
    """Generate a new record ID."""
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def normalize_expiry(value: datetime | str) -> str:
    """Validate an expiry and return it as an aware UTC ISO 8601 string.

    Raises:
        ValidationError: If the value is unparseable or has no timezone.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"Invalid expires_at: {value!r}") from exc
    if value.tzinfo is None:
        raise ValidationError("expires_at must include a timezone")
    return value.astimezone(UTC).isoformat()


@dataclass(frozen=True)
class MemoryOwner:
    """Tenant scope of a record. Either field may be None."""

    user_id: str | None = None
    guild_id: str | None = None

    def includes(self, other: MemoryOwner) -> bool:
        """Whether *other* falls inside this scope, as the store filters match it."""
        return (self.user_id is None or self.user_id == other.user_id) and (
            self.guild_id is None or self.guild_id == other.guild_id
        )


@dataclass
class MemoryRecord:
    """A durable, semantically indexed memory.

    Attributes:
        id: Unique identifier (UUID hex).
        content: The remembered text.
        embedding: Vector of the store's configured dimension.
        importance: Integer score 1-10.
        category: Open vocabulary (``user_preference``, ``decision``, ...).
        tags: Free-form labels used for filtering.
        owner_user_id: Owning user, if any.
        owner_guild_id: Owning guild or channel scope, if any.
        metadata: Extracted facts, ``priority``, ``expires_at`` and
            consolidation markers.
        created_at: ISO 8601 timestamp.
        updated_at: ISO 8601 timestamp.
        access_count: Number of times returned by a search.
        last_accessed_at: ISO 8601 timestamp of the last search hit.
    """

    id: str
    content: str
    embedding: list[float]
    importance: int
    category: str = "context"
    tags: list[str] = field(default_factory=list)
    owner_user_id: str | None = None
    owner_guild_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    access_count: int = 0
    last_accessed_at: str | None = None

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utc_now()
        if not self.updated_at:
            self.updated_at = self.created_at

    # -- Convenience properties ------------------------------------------------

    @property
    def owner(self) -> MemoryOwner:
        return MemoryOwner(user_id=self.owner_user_id, guild_id=self.owner_guild_id)

    @property
    def consolidated(self) -> bool:
        return bool(self.metadata.get("consolidated_into"))

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = self.metadata.get("expires_at")
        if not expires_at:
            return False
        try:
            expiry = datetime.fromisoformat(expires_at)
        except (TypeError, ValueError):
            logger.warning("Ignoring unreadable expires_at on memory %s: %r", self.id, expires_at)
            return False
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=UTC)
        now = now or datetime.now(UTC)
        return expiry <= now

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``memories`` column order."""
        return (
            self.id,
            self.content,
            to_blob(self.embedding),
            len(self.embedding),
            self.importance,
            self.category,
            json.dumps(sorted(set(self.tags))),
            self.owner_user_id,
            self.owner_guild_id,
            json.dumps(self.metadata),
            self.created_at,
            self.updated_at,
            self.access_count,
            self.last_accessed_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> MemoryRecord:
        """Deserialize from a SQLite row tuple."""
        return cls(
            id=row[0],
            content=row[1],
            embedding=from_blob(row[2]),
            importance=row[4],
            category=row[5],
            tags=json.loads(row[6]) if row[6] else [],
            owner_user_id=row[7],
            owner_guild_id=row[8],
            metadata=json.loads(row[9]) if row[9] else {},
            created_at=row[10],
            updated_at=row[11],
            access_count=row[12] or 0,
            last_accessed_at=row[13],
        )


@dataclass(frozen=True)
class SimilarityMatch:
    record: MemoryRecord
    similarity: float


class RelationshipType(StrEnum):
    SIMILAR = "similar"
    CAUSAL = "causal"
    TEMPORAL = "temporal"
    CONTRADICTORY = "contradictory"
    SUPPORTIVE = "supportive"
    CATEGORICAL = "categorical"
    PREREQUISITE = "prerequisite"
    CONSEQUENCE = "consequence"

    @property
    def undirected(self) -> bool:
        return self in (RelationshipType.SIMILAR, RelationshipType.CATEGORICAL)


@dataclass
class MemoryRelationship:
    """A typed, weighted edge between two memory records."""

    id: str
    source_memory_id: str
    target_memory_id: str
    type: RelationshipType
    strength: float
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        self.type = RelationshipType(self.type)
        if not self.created_at:
            self.created_at = utc_now()
        if not self.updated_at:
            self.updated_at = self.created_at

    def other_end(self, memory_id: str) -> str:
        if memory_id == self.source_memory_id:
            return self.target_memory_id
        return self.source_memory_id

    def to_row(self) -> tuple:
        return (
            self.id,
            self.source_memory_id,
            self.target_memory_id,
            str(self.type),
            self.strength,
            json.dumps(self.metadata),
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> MemoryRelationship:
        return cls(
            id=row[0],
            source_memory_id=row[1],
            target_memory_id=row[2],
            type=RelationshipType(row[3]),
            strength=float(row[4]),
            metadata=json.loads(row[5]) if row[5] else {},
            created_at=row[6],
            updated_at=row[7],
        )


@dataclass(frozen=True)
class RelatedMemory:
    """A memory reached from an origin through one or more edges."""

    memory_id: str
    relationship_type: RelationshipType
    strength: float
    depth: int
    path: tuple[str, ...]

    @property
    def indirect(self) -> bool:
        return self.depth > 1


@dataclass(frozen=True)
class ConnectionSuggestion:
    """A candidate edge. Never persisted until a caller creates it."""

    source_memory_id: str
    target_memory_id: str
    relationship_type: RelationshipType
    confidence: float
    reasoning: str


@dataclass(frozen=True)
class MemoryDecision:
    """Outcome of scoring a batch of messages for long-term storage."""

    should_save: bool
    importance: float
    category: str
    sentiment: str
    topics: tuple[str, ...]
    reasoning: str
    tags: tuple[str, ...] = ()
    facts: tuple[str, ...] = ()
    memory_type: str = "contextual"
    retention_priority: str = "low"
    confidence: float = 0.5
    duplicate_of: str | None = None
    duplicate_similarity: float = 0.0

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None
