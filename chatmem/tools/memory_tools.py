"""Memory tools the model can call on the user's behalf.

Each tool is bound to a ``MemoryEngine`` instance and scoped to the
caller: guild requests see guild-owned memories, DMs the user's own.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import Field

from chatmem.context.models import ContextScope
from chatmem.memory.gate import Permission
from chatmem.memory.models import MemoryOwner, RelationshipType
from chatmem.tools.base import BaseTool, ToolContext, ToolParams, ToolResult

if TYPE_CHECKING:
    from chatmem.engine import MemoryEngine
    from chatmem.tools.registry import ToolRegistry


def owner_for_context(ctx: ToolContext | None) -> MemoryOwner | None:
    """Guild requests use guild-owned memories; DMs use the user's own."""
    if ctx is None:
        return None
    if ctx.guild_id:
        return MemoryOwner(guild_id=ctx.guild_id)
    return MemoryOwner(user_id=ctx.user_id)


def _actor(ctx: ToolContext | None) -> str | None:
    return ctx.user_id if ctx else None


class MemoryTool(BaseTool):
    """Base for tools bound to a MemoryEngine."""

    def __init__(self, engine: MemoryEngine) -> None:
        self.engine = engine


# -- save_memory ---------------------------------------------------------------


class SaveMemoryParams(ToolParams):
    content: str = Field(description="The information to remember")
    importance: int | None = Field(
        default=None, ge=1, le=10, description="Importance 1-10. Estimated if omitted."
    )
    category: str | None = Field(
        default=None,
        description=(
            "Category: user_preference, important_fact, decision, relationship, event, "
            "knowledge, reminder, feedback or context. Detected if omitted."
        ),
    )
    tags: list[str] = Field(default_factory=list, description="Extra tags for filtering")
    priority: str = Field(default="medium", description="low, medium, high or critical")
    expires_in_hours: float | None = Field(
        default=None, gt=0, description="Forget automatically after this many hours"
    )


class SaveMemoryTool(MemoryTool):
    name = "save_memory"
    description = (
        "Store something in long-term memory. Use when the user says "
        "'remember X', 'save this', 'don't forget', etc."
    )
    params_model = SaveMemoryParams

    async def run(
        self,
        ctx: ToolContext | None,
        content: str,
        importance: int | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        priority: str = "medium",
        expires_in_hours: float | None = None,
    ) -> ToolResult:
        expires_at = (
            datetime.now(UTC) + timedelta(hours=expires_in_hours) if expires_in_hours else None
        )
        result = await self.engine.save_memory(
            content,
            owner=owner_for_context(ctx),
            importance=importance,
            category=category,
            tags=tags or [],
            priority=priority,
            expires_at=expires_at,
            actor_id=_actor(ctx),
        )
        decision = result.decision
        data: dict[str, Any] = {
            "saved": result.saved,
            "importance": decision.importance,
            "category": decision.category,
            "reasoning": decision.reasoning,
        }
        if result.record is not None:
            data["memory_id"] = result.record.id
        if decision.duplicate_of:
            data["duplicate_of"] = decision.duplicate_of
        return ToolResult(data=data)


# -- recall_memories -----------------------------------------------------------


class RecallParams(ToolParams):
    query: str = Field(description="What to search for in memory")
    limit: int = Field(default=5, ge=1, le=20, description="Maximum number of results")


class RecallMemoriesTool(MemoryTool):
    name = "recall_memories"
    description = (
        "Search long-term memory. Use when the user asks 'what do you "
        "remember about X', 'do you know my Y', or when you need to "
        "check if you have relevant context."
    )
    params_model = RecallParams

    async def run(self, ctx: ToolContext | None, query: str, limit: int = 5) -> ToolResult:
        matches = await self.engine.recall(
            query, owner=owner_for_context(ctx), limit=limit, actor_id=_actor(ctx)
        )
        results = [
            {
                "memory_id": m.record.id,
                "content": m.record.content,
                "category": m.record.category,
                "importance": m.record.importance,
                "similarity": round(m.similarity, 3),
            }
            for m in matches
        ]
        return ToolResult(data={"results": results, "count": len(results)})


# -- forget_memory -------------------------------------------------------------


class ForgetParams(ToolParams):
    memory_id: str = Field(description="ID of the memory to delete")


class ForgetMemoryTool(MemoryTool):
    name = "forget_memory"
    description = (
        "Permanently delete a memory by ID. Always tell the user what "
        "you found and confirm before calling this tool."
    )
    params_model = ForgetParams

    async def run(self, ctx: ToolContext | None, memory_id: str) -> ToolResult:
        actor = _actor(ctx)
        self.engine.gate.check(Permission.DELETE, actor)
        record = await self.engine.store.get(memory_id)
        owner = owner_for_context(ctx)
        # Other tenants' memories look the same as missing ones.
        if record is None or (
            owner is not None
            and not owner.includes(record.owner)
            and not self.engine.gate.is_owner(actor)
        ):
            return ToolResult(error=f"No memory with ID {memory_id}")
        deleted = await self.engine.delete_memory(memory_id, actor_id=actor)
        if not deleted:
            return ToolResult(error=f"No memory with ID {memory_id}")
        return ToolResult(data={"deleted": True, "memory_id": memory_id})


# -- transfer_context ----------------------------------------------------------


class TransferParams(ToolParams):
    importance: float | None = Field(
        default=None, ge=0, le=10, description="Override the estimated importance"
    )
    category: str | None = Field(default=None, description="Override the detected category")


class TransferContextTool(MemoryTool):
    name = "transfer_context"
    description = (
        "Save the current conversation to long-term memory now, instead "
        "of waiting for it to go idle."
    )
    params_model = TransferParams

    async def run(
        self,
        ctx: ToolContext | None,
        importance: float | None = None,
        category: str | None = None,
    ) -> ToolResult:
        if ctx is None:
            return ToolResult(error="No conversation to transfer")
        if ctx.guild_id and ctx.channel_id:
            scope, context_id = ContextScope.CHANNEL, ctx.channel_id
        else:
            scope, context_id = ContextScope.USER, ctx.user_id
        result = await self.engine.transfer(
            scope,
            context_id,
            importance=importance,
            category=category,
            guild_id=ctx.guild_id,
            actor_id=ctx.user_id,
        )
        return ToolResult(
            data={
                "state": str(result.state),
                "memory_id": result.memory_id,
                "reason": result.reason,
                "messages_considered": result.messages_considered,
            }
        )


# -- relate_memories -----------------------------------------------------------


class RelateParams(ToolParams):
    source_id: str = Field(description="ID of the first memory")
    target_id: str = Field(description="ID of the second memory")
    relationship_type: RelationshipType = Field(description="How the memories relate")
    strength: float = Field(default=0.7, ge=0, le=1, description="Strength 0-1")
    reasoning: str = Field(default="", description="Why the memories are related")


class RelateMemoriesTool(MemoryTool):
    name = "relate_memories"
    description = "Record a relationship between two memories, or update an existing one."
    params_model = RelateParams

    async def run(
        self,
        ctx: ToolContext | None,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType,
        strength: float = 0.7,
        reasoning: str = "",
    ) -> ToolResult:
        rel = await self.engine.create_relationship(
            source_id, target_id, relationship_type, strength, reasoning, actor_id=_actor(ctx)
        )
        return ToolResult(
            data={
                "relationship_id": rel.id,
                "source_id": rel.source_memory_id,
                "target_id": rel.target_memory_id,
                "type": str(rel.type),
                "strength": rel.strength,
            }
        )


# -- find_related_memories -----------------------------------------------------


class FindRelatedParams(ToolParams):
    memory_id: str = Field(description="ID of the memory to start from")
    include_indirect: bool = Field(default=False, description="Follow edges up to two hops")
    min_strength: float = Field(default=0.3, ge=0, le=1, description="Ignore weaker edges")
    max_results: int = Field(default=10, ge=1, le=50, description="Maximum number of results")


class FindRelatedTool(MemoryTool):
    name = "find_related_memories"
    description = "List memories connected to a memory through recorded relationships."
    params_model = FindRelatedParams

    async def run(
        self,
        ctx: ToolContext | None,
        memory_id: str,
        include_indirect: bool = False,
        min_strength: float = 0.3,
        max_results: int = 10,
    ) -> ToolResult:
        related = await self.engine.find_related(
            memory_id,
            include_indirect=include_indirect,
            min_strength=min_strength,
            max_results=max_results,
            actor_id=_actor(ctx),
        )
        results = [
            {
                "memory_id": r.memory_id,
                "type": str(r.relationship_type),
                "strength": round(r.strength, 3),
                "depth": r.depth,
            }
            for r in related
        ]
        return ToolResult(data={"results": results, "count": len(results)})


# -- suggest_memory_connections ------------------------------------------------


class SuggestParams(ToolParams):
    memory_id: str = Field(description="ID of the memory to find connections for")


class SuggestConnectionsTool(MemoryTool):
    name = "suggest_memory_connections"
    description = (
        "Suggest memories that could be related to a memory. Suggestions "
        "are not saved; use relate_memories to keep one."
    )
    params_model = SuggestParams

    async def run(self, ctx: ToolContext | None, memory_id: str) -> ToolResult:
        suggestions = await self.engine.suggest_connections(memory_id, actor_id=_actor(ctx))
        results = [
            {
                "target_id": s.target_memory_id,
                "type": str(s.relationship_type),
                "confidence": s.confidence,
                "reasoning": s.reasoning,
            }
            for s in suggestions
        ]
        return ToolResult(data={"suggestions": results, "count": len(results)})


# -- consolidate_memories ------------------------------------------------------


class ConsolidateParams(ToolParams):
    threshold: float = Field(
        default=0.85, ge=0.8, le=0.95, description="Similarity above which memories merge"
    )
    dry_run: bool = Field(default=True, description="Only preview the groups")


class ConsolidateMemoriesTool(MemoryTool):
    name = "consolidate_memories"
    description = (
        "Find near-duplicate memories and fold them into one. Nothing is "
        "deleted; duplicates are hidden from searches."
    )
    params_model = ConsolidateParams

    async def run(
        self, ctx: ToolContext | None, threshold: float = 0.85, dry_run: bool = True
    ) -> ToolResult:
        groups = await self.engine.consolidate(
            owner=owner_for_context(ctx),
            threshold=threshold,
            dry_run=dry_run,
            actor_id=_actor(ctx),
        )
        return ToolResult(
            data={
                "dry_run": dry_run,
                "groups": [
                    {"primary_id": g.primary.id, "duplicate_ids": g.duplicate_ids} for g in groups
                ],
                "count": len(groups),
            }
        )


# -- configure_memory ----------------------------------------------------------


class ConfigureParams(ToolParams):
    short_term_limit: int | None = Field(default=None, description="Messages kept per conversation")
    session_timeout: float | None = Field(default=None, description="Idle seconds before transfer")
    memory_decision_threshold: float | None = Field(
        default=None, description="Importance needed to save (0-10)"
    )
    memory_relevance_threshold: float | None = Field(
        default=None, description="Similarity needed to recall (0-1)"
    )
    auto_transfer: bool | None = Field(default=None, description="Transfer on overflow and idle")
    tool_driven_mode: bool | None = Field(
        default=None, description="Only save memories when explicitly asked"
    )


class ConfigureMemoryTool(MemoryTool):
    name = "configure_memory"
    description = "Change memory settings. Only the owner may use this."
    params_model = ConfigureParams

    async def run(self, ctx: ToolContext | None, **values: Any) -> ToolResult:
        if not self.engine.gate.is_owner(_actor(ctx)):
            return ToolResult(error="Only the owner can change memory configuration")
        changes: dict[str, Any] = {}
        features: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if key in ("auto_transfer", "tool_driven_mode"):
                features[key] = value
            else:
                changes[key] = value
        if features:
            changes["features"] = features
        if not changes:
            return ToolResult(error="No settings given")
        config = await self.engine.update_config(**changes)
        return ToolResult(data={"updated": sorted(changes), "config": config.model_dump()})


# -- memory_stats --------------------------------------------------------------


class MemoryStatsTool(MemoryTool):
    name = "memory_stats"
    description = "Report short-term buffer and long-term memory statistics."

    async def run(self, ctx: ToolContext | None) -> ToolResult:
        data: dict[str, Any] = {"short_term": self.engine.get_stats()}
        data["long_term"] = await self.engine.analytics(
            owner=owner_for_context(ctx), actor_id=_actor(ctx)
        )
        return ToolResult(data=data)


MEMORY_TOOLS: tuple[type[MemoryTool], ...] = (
    SaveMemoryTool,
    RecallMemoriesTool,
    ForgetMemoryTool,
    TransferContextTool,
    RelateMemoriesTool,
    FindRelatedTool,
    SuggestConnectionsTool,
    ConsolidateMemoriesTool,
    ConfigureMemoryTool,
    MemoryStatsTool,
)


def register_memory_tools(registry: ToolRegistry, engine: MemoryEngine) -> None:
    """Register every memory tool, bound to *engine*."""
    for tool_cls in MEMORY_TOOLS:
        registry.register(tool_cls(engine))
