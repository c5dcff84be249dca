"""Tool contract: arguments, call context and results."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel


@dataclass
class ToolResult:
    """Outcome of one tool call: ``data`` on success, ``error`` otherwise."""

    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """JSON text for a tool_result content block."""
        if self.error:
            return json.dumps({"error": self.error})
        return json.dumps(self.data or {})


@dataclass(frozen=True)
class ToolContext:
    """Where a call comes from. Decides whose memories a tool sees.

    Attributes:
        user_id: The requesting user.
        guild_id: Set for requests made inside a guild (server).
        channel_id: Set for requests made inside a channel.
    """

    user_id: str
    guild_id: str | None = None
    channel_id: str | None = None


class ToolParams(BaseModel):
    """Arguments of a tool. The model is shown ``model_json_schema()``."""


class BaseTool(ABC):
    """A named operation the model can call.

    Subclasses set ``name``, ``description`` and ``params_model`` and
    implement ``run``, which receives the call context and the validated
    arguments as keywords.
    """

    name: str = ""
    description: str = ""
    params_model: type[ToolParams] = ToolParams

    def parse(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate raw arguments. Raises pydantic's ValidationError."""
        return self.params_model(**arguments).model_dump()

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.params_model.model_json_schema(),
        }

    @abstractmethod
    async def run(self, ctx: ToolContext | None, **params: Any) -> ToolResult: ...
