"""Orchestrate language-model agents through planned, evaluated task pipelines."""

from .agents import Agent, ManagerAgent, Orchestrator, OrchestratorSettings, RunResult
from .config import ConfigError, ProjectConfig
from .enums import ExecutionMode, MemoryMode, MemoryScope, OutputFormat
from .tasks import Task

__all__ = [
    "Agent",
    "ConfigError",
    "ExecutionMode",
    "ManagerAgent",
    "MemoryMode",
    "MemoryScope",
    "Orchestrator",
    "OrchestratorSettings",
    "OutputFormat",
    "ProjectConfig",
    "RunResult",
    "Task",
]

__version__ = "0.1.0"
