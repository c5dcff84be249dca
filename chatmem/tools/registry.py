"""Tool registry: the catalog of tools the model can call."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import pydantic

from chatmem.errors import DimensionMismatch, NotPermitted, ValidationError
from chatmem.tools.base import ToolResult

if TYPE_CHECKING:
    from chatmem.tools.base import BaseTool, ToolContext

logger = logging.getLogger(__name__)

# Errors the model can act on; their message goes back verbatim.
_DOMAIN_ERRORS = (NotPermitted, ValidationError, DimensionMismatch)


class ToolRegistry:
    """Tools by name, plus the one place calls are dispatched.

    ``execute`` never raises. Bad arguments and domain errors come back
    as ``ToolResult(error=...)`` with a readable message; anything else
    is logged and reported generically.
    """

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Tool definitions in the shape the Messages API expects."""
        return [tool.schema() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        tool_context: ToolContext | None = None,
    ) -> ToolResult:
        """Validate *arguments* and run the named tool in *tool_context*."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(error=f"Unknown tool: {name}")

        try:
            params = tool.parse(arguments)
        except pydantic.ValidationError as exc:
            logger.warning("Tool '%s' got invalid arguments: %s", name, arguments)
            problems = "; ".join(
                f"{'.'.join(str(p) for p in e['loc']) or 'arguments'}: {e['msg']}"
                for e in exc.errors()
            )
            return ToolResult(error=f"Invalid arguments for {name}: {problems}")

        logger.info("Tool '%s' called with %s", name, params)
        t0 = time.monotonic()
        try:
            result = await tool.run(tool_context, **params)
        except _DOMAIN_ERRORS as exc:
            result = ToolResult(error=str(exc))
        except Exception:
            logger.exception("Tool '%s' failed in %.2fs", name, time.monotonic() - t0)
            return ToolResult(error=f"Tool '{name}' failed. Check logs for details.")

        elapsed = time.monotonic() - t0
        if result.success:
            logger.info("Tool '%s' succeeded in %.2fs", name, elapsed)
        else:
            logger.warning("Tool '%s' returned error in %.2fs: %s", name, elapsed, result.error)
        return result
