"""Executes tool calls on behalf of a single agent."""

from __future__ import annotations

import inspect
import json
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Sequence

from .base import Tool, ToolContext, ToolResult

logger = logging.getLogger(__name__)

EventHook = Callable[[Dict[str, Any]], None]

_EXAMPLE_VALUES = {"string": "example", "number": 0, "integer": 0, "boolean": False}


class ToolExecutor:
    """Validates, caches and runs the tools owned by one agent.

    Failures never raise: they come back as descriptive strings so the
    calling agent can hand them to the model.
    """

    def __init__(
        self,
        tools: Sequence[Tool],
        agent_name: str = "",
        *,
        cache_size: int = 128,
        on_event: Optional[EventHook] = None,
    ) -> None:
        self._tools: List[Tool] = list(tools)
        self.agent_name = agent_name
        self.cache_size = cache_size
        self.on_event = on_event
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    @property
    def tools(self) -> List[Tool]:
        return list(self._tools)

    def get(self, tool_id: str) -> Optional[Tool]:
        for tool in self._tools:
            if tool.id == tool_id or tool.name == tool_id:
                return tool
        return None

    def tool_name(self, tool_id: str) -> str:
        tool = self.get(tool_id)
        return tool.name if tool else tool_id

    # -- prompt documentation -------------------------------------------------

    def build_usage_docs(self) -> str:
        blocks = []
        for tool in self._tools:
            lines = [f"- {tool.id}", f" - Purpose: {tool.description}"]
            params = self._parameter_block(tool)
            if params:
                lines.append(params)
            lines.append(f" - Example {tool.name} Usage:\n{self._example_usage(tool)}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def _parameter_block(self, tool: Tool) -> str:
        properties = (tool.parameters or {}).get("properties") or {}
        if not properties:
            return ""
        required = (tool.parameters or {}).get("required") or []
        label = "Parameters" if len(properties) > 1 else "Parameter"
        lines = [self._render_field(key, spec, 2, required) for key, spec in properties.items()]
        return f" - {label}:\n" + "\n".join(lines)

    def _render_field(self, key: str, spec: Dict[str, Any], indent: int, required: Sequence[str]) -> str:
        pad = " " * indent
        line = f"{pad}- {key} ({spec.get('type', 'any')})"
        if key in required:
            line += " [required]"
        if spec.get("description"):
            line += f": {spec['description']}"
        if spec.get("type") == "object" and spec.get("properties"):
            nested_required = spec.get("required") or []
            nested = [
                self._render_field(name, child, indent + 2, nested_required)
                for name, child in spec["properties"].items()
            ]
            line += "\n" + "\n".join(nested)
        elif spec.get("type") == "array" and spec.get("items"):
            line += f"\n{pad}  items:\n" + self._render_field(
                "item", spec["items"], indent + 4, spec["items"].get("required") or []
            )
        return line

    def _example_usage(self, tool: Tool) -> str:
        properties = (tool.parameters or {}).get("properties") or {}
        args = {
            key: spec["example"] if "example" in spec else _EXAMPLE_VALUES.get(spec.get("type"), "value")
            for key, spec in properties.items()
        }
        return f"TOOL({tool.id}, {json.dumps(args, ensure_ascii=False)})"

    # -- execution --------------------------------------------------------------

    @staticmethod
    def is_valid_input(args: Any, tool: Tool) -> bool:
        if not tool.input_required:
            return True
        if tool.input_type == "string":
            return isinstance(args, str)
        if tool.input_type == "number":
            return isinstance(args, (int, float)) and not isinstance(args, bool)
        if tool.input_type == "object":
            return isinstance(args, dict)
        return False

    async def execute_tool(self, tool_id: str, args: Any, *, task_id: str = "") -> str:
        tool = self.get(tool_id)
        if tool is None:
            return f"⚠️ Tool '{tool_id}' not found."
        if not self.is_valid_input(args, tool):
            return f"⚠️ Invalid input for tool '{tool_id}': expected {tool.input_type}"

        cache_key = f"{tool.id}::{json.dumps(args, sort_keys=True, default=str)}"
        if tool.cacheable and cache_key in self._cache:
            self._cache.move_to_end(cache_key)
            return f"🧠 (tool cached) {self._cache[cache_key]}"

        context = ToolContext(agent_name=self.agent_name, task_id=task_id, metadata={"tool": tool.id})
        try:
            outcome = tool.run(args=args, context=context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.warning("Tool '%s' failed for agent '%s': %s", tool.id, self.agent_name, exc)
            replacement = tool.handle_error(exc)
            if replacement is not None:
                return replacement
            return f"❌ Tool '{tool_id}' execution error: {exc}"

        result = outcome.content if isinstance(outcome, ToolResult) else str(outcome)
        if tool.cacheable:
            self._cache[cache_key] = result
            if len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

        if self.on_event:
            self.on_event(
                {
                    "action": "tool_executed",
                    "agent": self.agent_name,
                    "tool": tool.id,
                    "tool_payload": args,
                    "result": result,
                }
            )
        return result
