"""Built-in tools available to every project."""

from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, Iterable, List

import yaml

from ..config import ConfigError
from .base import Tool, ToolContext, ToolResult
from .registry import ToolRegistry


class EchoTool(Tool):
    """Returns the text it was given. Handy for wiring checks."""

    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string", "description": "Text to echo back", "example": "ping"}},
        "required": ["text"],
    }
    cacheable = False
    examples = ['TOOL(echo, {"text": "ping"})']

    def run(self, *, args: Any, context: ToolContext) -> ToolResult:
        text = str(args.get("text", ""))
        return ToolResult(content=text, metadata={"agent": context.agent_name})


class LookupTool(Tool):
    """Searches a small record store by keyword.

    Records come from the ``records`` argument or from a YAML/JSON file
    given as ``path``; each record is a mapping of plain values.
    """

    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Keyword matched against record values"},
            "limit": {"type": "number", "description": "Maximum number of matches"},
        },
        "required": ["query"],
    }

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        raw_records: Iterable[Dict[str, Any]] = kwargs.get("records") or []
        path = kwargs.get("path")
        if path:
            raw_records = _load_records(pathlib.Path(path))
        self._records: List[Dict[str, Any]] = [dict(entry) for entry in raw_records]

    def run(self, *, args: Any, context: ToolContext) -> ToolResult:
        query = str(args.get("query", "")).strip().lower()
        limit = int(args.get("limit", 5))
        if not query:
            return ToolResult(content="Empty query", metadata={"found": "false"})
        matches = [
            record
            for record in self._records
            if any(query in str(value).lower() for value in record.values())
        ][:limit]
        if not matches:
            return ToolResult(content=f"No records match '{query}'", metadata={"found": "false"})
        return ToolResult(content=json.dumps(matches, indent=2, ensure_ascii=False), metadata={"found": "true"})


def _load_records(path: pathlib.Path) -> List[Dict[str, Any]]:
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot load lookup records from {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("records", [])
    if not isinstance(data, list):
        raise ConfigError(f"Lookup records in {path} must be a list")
    return data


def register_builtin_tools(registry: ToolRegistry) -> None:
    registry.register_factory("echo", lambda: EchoTool("echo"), overwrite=True)
    registry.register_factory("lookup", lambda: LookupTool("lookup"), overwrite=True)
