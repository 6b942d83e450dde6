"""Enumerations shared across the runtime."""

from __future__ import annotations

from enum import Enum


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"
    CSV = "csv"
    XML = "xml"


class ExecutionMode(str, Enum):
    """Top level strategy used by the orchestrator."""

    SEQUENTIAL = "sequential"
    HIERARCHICAL = "hierarchical"
    AI_DRIVEN = "ai-driven"


class PlanMode(str, Enum):
    """Sub-mode chosen by the model in ai-driven runs."""

    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"
    SEQUENTIAL = "sequential"


class MemoryScope(str, Enum):
    NONE = "none"
    SHORT = "short"
    LONG = "long"


class MemoryMode(str, Enum):
    """Whether long-term memory is shared by all agents or kept per agent."""

    SAME = "same"
    SEPARATED = "separated"
