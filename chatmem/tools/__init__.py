"""Tool framework: memory tools bound to an engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chatmem.tools.memory_tools import register_memory_tools
from chatmem.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from chatmem.engine import MemoryEngine


def build_registry(engine: MemoryEngine) -> ToolRegistry:
    """Create a registry with every memory tool bound to *engine*."""
    registry = ToolRegistry()
    register_memory_tools(registry, engine)
    return registry


__all__ = ["ToolRegistry", "build_registry"]
