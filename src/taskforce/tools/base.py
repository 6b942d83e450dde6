"""Base classes for tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Union


@dataclass
class ToolContext:
    """Metadata passed to tool invocations."""

    agent_name: str
    task_id: str
    iteration: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Result returned by a tool."""

    content: str
    metadata: Dict[str, str] = field(default_factory=dict)


ToolOutput = Union[ToolResult, str]


class Tool:
    """Base tool class.

    Subclasses implement :meth:`run`, either as a plain method or as a
    coroutine. ``parameters`` is a JSON-schema object describing ``args``;
    it feeds the prompt documentation and the native tool-calling schema.
    """

    name: str
    description: str
    parameters: Optional[Dict[str, Any]] = None
    input_type: str = "object"
    input_required: bool = True
    cacheable: bool = True
    examples: List[str] = []

    def __init__(
        self,
        name: str,
        description: str | None = None,
        *,
        tool_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.name = name
        self.id = tool_id or name
        self.description = description or self.__class__.__doc__ or ""
        self.config = kwargs

    def run(
        self, *, args: Any, context: ToolContext
    ) -> Union[ToolOutput, Awaitable[ToolOutput]]:  # pragma: no cover - abstract
        raise NotImplementedError

    def handle_error(self, error: Exception) -> Optional[str]:
        """Return a replacement message for ``error`` or ``None`` to use the default."""
        return None

    def schema(self) -> Dict[str, Any]:
        """Function-calling schema understood by OpenAI compatible servers."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }
