"""Tool abstractions and registries."""

from .base import Tool, ToolContext, ToolResult
from .executor import ToolExecutor
from .registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolResult", "ToolExecutor", "ToolRegistry"]
