"""Configuration helpers for taskforce projects."""

from __future__ import annotations

import importlib
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml


class ConfigError(RuntimeError):
    """Raised when configuration is invalid or references unknown objects."""


@dataclass
class MemorySpec:
    """Memory configuration for an agent."""

    scope: str = "none"
    mode: str = "same"
    type: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "MemorySpec":
        if not data:
            return cls()
        return cls(
            scope=str(data.get("scope", "none")),
            mode=str(data.get("mode", "same")),
            type=data.get("type"),
            params=dict(data.get("params", {})),
        )


@dataclass
class AgentSpec:
    """Definition of an agent from config."""

    name: str
    role: str
    goal: str
    backstory: str
    model: Optional[str] = None
    llm_provider: Optional[str] = None
    llm_params: Dict[str, Any] = field(default_factory=dict)
    model_options: Dict[str, Any] = field(default_factory=dict)
    tools: List[str] = field(default_factory=list)
    guardrails: List[str] = field(default_factory=list)
    system_prompt: Optional[str] = None
    allow_delegation: bool = False
    auto_truncate_history: bool = False
    memory: MemorySpec = field(default_factory=MemorySpec)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "AgentSpec":
        missing = [key for key in ("role", "goal", "backstory") if key not in data]
        if missing:
            raise ConfigError(f"Agent '{name}' is missing required keys: {', '.join(missing)}")
        return cls(
            name=name,
            role=str(data["role"]),
            goal=str(data["goal"]),
            backstory=str(data["backstory"]),
            model=data.get("model"),
            llm_provider=data.get("llm_provider"),
            llm_params=dict(data.get("llm_params", {})),
            model_options=dict(data.get("model_options", {})),
            tools=list(data.get("tools", [])),
            guardrails=[str(rule) for rule in data.get("guardrails", [])],
            system_prompt=data.get("system_prompt"),
            allow_delegation=bool(data.get("allow_delegation", False)),
            auto_truncate_history=bool(data.get("auto_truncate_history", False)),
            memory=MemorySpec.from_mapping(data.get("memory")),
        )


@dataclass
class TaskSpec:
    """Represents a task to be executed by an agent."""

    id: str
    name: str
    description: str
    agent: str = ""
    output_format: str = "text"
    input_from_task: Optional[str] = None
    expected_role: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TaskSpec":
        missing = [key for key in ("id", "description") if key not in data]
        if missing:
            raise ConfigError(f"Task is missing required keys: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            description=str(data["description"]),
            agent=str(data.get("agent") or ""),
            output_format=str(data.get("output_format", "text")),
            input_from_task=data.get("input_from_task"),
            expected_role=data.get("expected_role"),
        )


@dataclass
class ToolSpec:
    """Configuration for a tool instance."""

    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "ToolSpec":
        if "type" not in data:
            raise ConfigError(f"Tool '{name}' requires a type path")
        return cls(name=name, type=str(data["type"]), args=dict(data.get("args", {})))


@dataclass
class DefaultsSpec:
    """Optional defaults applied to agents."""

    llm_provider: Optional[str] = None
    llm_params: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    training_dir: Optional[str] = None
    memory_dir: str = "taskforce-db"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "DefaultsSpec":
        if not data:
            return cls()
        return cls(
            llm_provider=data.get("llm_provider"),
            llm_params=dict(data.get("llm_params", {})),
            model=data.get("model"),
            training_dir=data.get("training_dir"),
            memory_dir=str(data.get("memory_dir", "taskforce-db")),
        )


@dataclass
class OrchestrationSpec:
    """Execution settings for the orchestrator."""

    execution_mode: str = "sequential"
    allow_parallel: bool = False
    max_retry_per_task: int = 5
    max_delegate_per_task: int = 3
    max_global_replans: int = 2
    enable_replanning: bool = True
    enable_ai_planning: bool = True
    manager_model: Optional[str] = None
    memory: bool = False
    verbose: bool = False
    log_dir: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "OrchestrationSpec":
        if not data:
            return cls()
        return cls(
            execution_mode=str(data.get("execution_mode", "sequential")),
            allow_parallel=bool(data.get("allow_parallel", False)),
            max_retry_per_task=int(data.get("max_retry_per_task", 5)),
            max_delegate_per_task=int(data.get("max_delegate_per_task", 3)),
            max_global_replans=int(data.get("max_global_replans", 2)),
            enable_replanning=bool(data.get("enable_replanning", True)),
            enable_ai_planning=bool(data.get("enable_ai_planning", True)),
            manager_model=data.get("manager_model"),
            memory=bool(data.get("memory", False)),
            verbose=bool(data.get("verbose", False)),
            log_dir=data.get("log_dir"),
        )


@dataclass
class ProjectConfig:
    """Representation of the YAML configuration."""

    name: str
    description: Optional[str]
    defaults: DefaultsSpec
    orchestration: OrchestrationSpec
    agents: Dict[str, AgentSpec]
    tasks: List[TaskSpec]
    tool_specs: Dict[str, ToolSpec]
    inputs: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "ProjectConfig":
        path = pathlib.Path(path)
        return cls.from_yaml(path.read_text(), default_name=path.stem)

    @classmethod
    def from_yaml(cls, text: str, default_name: str = "taskforce") -> "ProjectConfig":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML: {exc}") from exc
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data, default_name=default_name)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], default_name: str = "taskforce") -> "ProjectConfig":
        agents = {
            name: AgentSpec.from_mapping(name, info)
            for name, info in (data.get("agents") or {}).items()
        }
        tasks = [TaskSpec.from_mapping(item) for item in data.get("tasks") or []]
        if not agents:
            raise ConfigError("At least one agent must be defined")
        if not tasks:
            raise ConfigError("At least one task must be defined")
        tool_specs = {
            name: ToolSpec.from_mapping(name, info)
            for name, info in (data.get("tools") or {}).items()
        }
        return cls(
            name=data.get("name", default_name),
            description=data.get("description"),
            defaults=DefaultsSpec.from_mapping(data.get("defaults")),
            orchestration=OrchestrationSpec.from_mapping(data.get("orchestration")),
            agents=agents,
            tasks=tasks,
            tool_specs=tool_specs,
            inputs=dict(data.get("inputs") or {}),
        )

    def get_agent(self, name: str) -> AgentSpec:
        try:
            return self.agents[name]
        except KeyError as exc:
            raise ConfigError(f"Unknown agent '{name}' referenced by task") from exc


def import_string(path: str) -> Any:
    """Return attribute from module specified by path "module:qualname"."""

    if ":" not in path:
        raise ConfigError(f"Import path '{path}' must use module:qualname format")
    module_path, attr = path.split(":", 1)
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigError(f"Cannot import module '{module_path}': {exc}") from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigError(f"Module '{module_path}' has no attribute '{attr}'") from exc


def instantiate_from_path(path: str, *args: Any, **kwargs: Any) -> Any:
    """Import and instantiate a class given its dotted path."""

    cls = import_string(path)
    return cls(*args, **kwargs)
