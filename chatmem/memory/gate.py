"""Runtime configuration and permission gate.

The gate owns the one mutable configuration object of the engine. Readers
take a reference to the current ``MemoryConfig`` (immutable); updates are
validated and swapped in whole under a lock, so nobody ever observes a
half-applied change.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from chatmem.errors import NotPermitted, ValidationError

if TYPE_CHECKING:
    from chatmem.config import Settings

logger = logging.getLogger(__name__)


class Permission(StrEnum):
    SAVE = "allow_save"
    SEARCH = "allow_search"
    DELETE = "allow_delete"
    CONSOLIDATE = "allow_consolidate"
    ANALYTICS = "allow_analytics"
    RELATIONSHIPS = "allow_relationships"


class MemoryPermissions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    allow_save: bool = True
    allow_search: bool = True
    allow_delete: bool = True
    allow_consolidate: bool = True
    allow_analytics: bool = True
    allow_relationships: bool = True


class FeatureFlags(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    auto_transfer: bool = True
    tool_driven_mode: bool = False
    relationships: bool = True
    consolidation: bool = False
    llm_summaries: bool = False


class MemoryConfig(BaseModel):
    """Validated, immutable snapshot of the engine's tunables."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    short_term_limit: int = Field(default=35, ge=1, le=1000)
    session_timeout: float = Field(default=3600.0, gt=0)
    memory_decision_threshold: float = Field(default=6.0, ge=0, le=10)
    memory_relevance_threshold: float = Field(default=0.65, ge=0, le=1)
    duplicate_threshold: float = Field(default=0.9, ge=0, le=1)
    consolidation_threshold: float = Field(default=0.85, ge=0, le=1)
    relationship_similarity_threshold: float = Field(default=0.75, ge=0, le=1)
    max_relevant_memories: int = Field(default=8, ge=1, le=100)
    owner_user_id: str = ""
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    permissions: MemoryPermissions = Field(default_factory=MemoryPermissions)

    @classmethod
    def from_settings(cls, s: Settings) -> MemoryConfig:
        return cls(
            short_term_limit=s.short_term_limit,
            session_timeout=s.session_timeout_seconds,
            memory_decision_threshold=s.memory_decision_threshold,
            memory_relevance_threshold=s.memory_relevance_threshold,
            duplicate_threshold=s.duplicate_threshold,
            consolidation_threshold=s.consolidation_threshold,
            relationship_similarity_threshold=s.relationship_similarity_threshold,
            max_relevant_memories=s.max_relevant_memories,
            owner_user_id=s.owner_user_id,
            features=FeatureFlags(
                auto_transfer=s.enable_auto_transfer,
                tool_driven_mode=s.enable_tool_driven_mode,
                relationships=s.enable_memory_relationships,
                consolidation=s.enable_memory_consolidation,
                llm_summaries=s.enable_llm_summaries,
            ),
        )

    @property
    def automatic_transfer(self) -> bool:
        """Whether overflow and idle triggers may promote buffers on their own."""
        return self.features.auto_transfer and not self.features.tool_driven_mode


class ConfigGate:
    """Holds the current MemoryConfig and answers permission checks."""

    def __init__(self, config: MemoryConfig | None = None) -> None:
        self._config = config or MemoryConfig()
        self._lock = asyncio.Lock()

    @property
    def config(self) -> MemoryConfig:
        return self._config

    def is_owner(self, actor_id: str | None) -> bool:
        owner = self._config.owner_user_id
        return bool(owner) and actor_id == owner

    def allowed(self, permission: Permission, actor_id: str | None = None) -> bool:
        if self.is_owner(actor_id):
            return True
        return bool(getattr(self._config.permissions, permission.value))

    def check(self, permission: Permission, actor_id: str | None = None) -> None:
        """Raise NotPermitted unless *permission* is enabled or *actor_id* is the owner."""
        if not self.allowed(permission, actor_id):
            logger.info("Denied %s for actor %s", permission.value, actor_id or "<system>")
            raise NotPermitted(permission.value)

    async def update(self, changes: dict[str, Any]) -> MemoryConfig:
        """Validate *changes* against the current config and swap it in.

        Nested ``features`` and ``permissions`` dicts are merged key by key.
        Raises ValidationError and leaves the current config untouched when
        any value is invalid.
        """
        async with self._lock:
            merged = self._config.model_dump()
            for key, value in changes.items():
                if key in ("features", "permissions") and isinstance(value, dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            try:
                new_config = MemoryConfig.model_validate(merged)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid configuration: {exc}") from exc
            self._config = new_config
            logger.info("Memory configuration updated: %s", sorted(changes))
            return new_config
