"""Core agent implementation."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from ..config import ConfigError
from ..enums import ExecutionMode, MemoryMode, MemoryScope, OutputFormat
from ..llm.models import ModelInfo, generation_options, get_model_info
from ..llm.provider import ChatMessage, LLMProvider, PromptContext
from ..memory.retrieval import Retriever, retrieve_and_enrich
from ..memory.simple import MemoryProvider, MemoryRecord
from ..telemetry import TelemetrySink, estimate_tokens
from ..tools.base import Tool
from ..tools.executor import EventHook, ToolExecutor
from ..training import TrainingResult
from . import protocol
from .history import SUMMARY_PROMPT, truncate_messages
from .prompts import (
    build_agent_directory,
    build_system_message,
    build_tool_followup,
    build_user_message,
    normalize_output,
)

logger = logging.getLogger(__name__)

MAX_DELEGATION = 3
MAX_TOOL_DEPTH = 3
BLOCKED_DELEGATION = "⚠️ Delegation blocked."
MEMORY_SUMMARY_PROMPT = (
    "Please provide a concise, focused summary of the following text, preserving all important "
    "details relevant to the task. Do not omit critical information."
)


@dataclass
class DelegationMarker:
    """An agent asked for its task to be handed to someone else."""

    delegate_to: str
    task: str
    depth: int = 1

    def to_text(self) -> str:
        return protocol.encode_delegate(self.delegate_to, self.task)

    def to_json(self) -> str:
        return json.dumps(
            {"__delegate__": {"delegate_to": self.delegate_to, "task": self.task}, "__depth__": self.depth},
            ensure_ascii=False,
        )

    def __str__(self) -> str:
        return self.to_text()


AgentOutput = Union[str, DelegationMarker]


class AgentRegistry:
    """Agents taking part in one run, looked up by name."""

    def __init__(self, agents: Sequence["Agent"] = ()) -> None:
        self._agents: Dict[str, Agent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: "Agent") -> None:
        if agent.name in self._agents and self._agents[agent.name] is not agent:
            raise ConfigError(f"Agent name '{agent.name}' is used twice")
        self._agents[agent.name] = agent
        agent.registry = self

    def get(self, name: str) -> Optional["Agent"]:
        return self._agents.get(name)

    def require(self, name: str) -> "Agent":
        agent = self._agents.get(name)
        if agent is None:
            raise ConfigError(f"Agent '{name}' not found")
        return agent

    def all(self) -> List["Agent"]:
        return list(self._agents.values())

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator["Agent"]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)


class Agent:
    """A worker that completes tasks with a language model.

    Besides answering directly an agent may call tools through
    ``TOOL(...)`` markers (or natively when the model supports it) and ask
    for its task to be delegated with ``DELEGATE(...)``.
    """

    def __init__(
        self,
        name: str,
        role: str,
        goal: str,
        backstory: str,
        llm_provider: LLMProvider,
        *,
        model: str | None = None,
        model_options: Dict[str, Any] | None = None,
        tools: Sequence[Tool] | None = None,
        guardrails: Sequence[str] | None = None,
        system_prompt: str | None = None,
        allow_delegation: bool = False,
        memory_scope: MemoryScope | str | None = None,
        memory_provider: MemoryProvider | None = None,
        memory_mode: MemoryMode | str = MemoryMode.SAME,
        retriever: Retriever | None = None,
        training: TrainingResult | None = None,
        auto_truncate_history: bool = False,
        max_delegation: int = MAX_DELEGATION,
        max_tool_depth: int = MAX_TOOL_DEPTH,
        model_info: ModelInfo | None = None,
        telemetry: TelemetrySink | None = None,
        verbose: bool = False,
    ) -> None:
        self.name = name
        self.role = role
        self.goal = goal
        self.backstory = backstory
        self.llm_provider = llm_provider
        self.model = model
        self.model_options = dict(model_options or {})
        self.guardrails = list(guardrails or [])
        self.system_prompt = system_prompt
        self.allow_delegation = allow_delegation
        self.memory_provider = memory_provider
        if memory_scope is None:
            memory_scope = memory_provider.scope if memory_provider is not None else MemoryScope.NONE
        self.memory_scope = MemoryScope(memory_scope)
        self.memory_mode = MemoryMode(memory_mode)
        self.retriever = retriever
        self.training = training
        self.auto_truncate_history = auto_truncate_history
        self.max_delegation = max_delegation
        self.max_tool_depth = max_tool_depth
        self.model_info = model_info or get_model_info(model)
        self.telemetry = telemetry
        self.verbose = verbose
        self.tool_executor = ToolExecutor(list(tools or []), agent_name=name)
        self.registry: Optional[AgentRegistry] = None
        self.delegation_count = 0
        self.delegation_disallowed = False

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, role={self.role!r})"

    # -- state ----------------------------------------------------------------

    @property
    def tools(self) -> List[Tool]:
        return self.tool_executor.tools

    def can_use_tools(self) -> bool:
        return bool(self.tool_executor.tools)

    def can_delegate(self) -> bool:
        return self.allow_delegation and self.delegation_count < self.max_delegation

    def increment_delegation(self) -> None:
        self.delegation_count += 1

    def reset(self) -> None:
        self.delegation_count = 0
        self.delegation_disallowed = False

    def set_event_hook(self, hook: Optional[EventHook]) -> None:
        self.tool_executor.on_event = hook

    # -- model access -----------------------------------------------------------

    async def invoke_model(
        self,
        messages: Sequence[ChatMessage],
        *,
        task_id: str = "",
        tools: Sequence[Tool] | None = None,
        options: Dict[str, Any] | None = None,
    ) -> str:
        context = PromptContext(
            agent_name=self.name,
            task_id=task_id,
            model=self.model,
            options=generation_options(self.model, {**self.model_options, **(options or {})}),
            tools=list(tools or []),
            tool_executor=self.tool_executor,
            verbose=self.verbose,
        )
        started = time.perf_counter()
        output = await self.llm_provider.generate(list(messages), context)
        duration_ms = (time.perf_counter() - started) * 1000
        if self.telemetry is not None:
            payload = json.dumps([message.as_dict() for message in messages], ensure_ascii=False)
            self.telemetry.record_llm_call(self.name, estimate_tokens(payload), duration_ms, self.model or "default")
        return output

    async def summarize(self, text: str) -> str:
        """Condense ``text`` with the agent's own model."""
        if not text.strip():
            return ""
        messages = [ChatMessage("system", MEMORY_SUMMARY_PROMPT), ChatMessage("user", text)]
        return await self.invoke_model(messages, options={"temperature": 0.3})

    async def _summarize_history(self, messages: List[ChatMessage]) -> str:
        return await self.invoke_model([ChatMessage("system", SUMMARY_PROMPT), *messages])

    async def _fit(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        if not self.auto_truncate_history:
            return messages
        return await truncate_messages(messages, self.model_info, self._summarize_history)

    # -- task execution -----------------------------------------------------------

    def system_message(self, inputs: Mapping[str, Any], is_training: bool = False) -> str:
        directory = build_agent_directory(self, self.registry or [])
        return build_system_message(self, inputs, directory=directory, is_training=is_training)

    async def run_task(
        self,
        inputs: Mapping[str, Any],
        description: str,
        output_format: OutputFormat | str | None = None,
        previous_output: str | None = None,
        retry_reason: str | None = None,
        delegate_reason: str | None = None,
        replan_reason: str | None = None,
        execution_mode: ExecutionMode | None = None,
        retriever: Retriever | None = None,
        is_training: bool = False,
        task_id: str = "",
    ) -> AgentOutput:
        """Run one task and return its text or a :class:`DelegationMarker`."""
        logger.info("🚀 [Agent Run Task] %s is executing task: %s", self.name, description)
        memory_key = task_id or description

        if not is_training and self.memory_scope is not MemoryScope.NONE:
            enriched = await retrieve_and_enrich(
                previous_output or " ".join(str(value) for value in inputs.values()),
                retriever=self.retriever or retriever,
                memory_provider=self.memory_provider,
                summarize=self.summarize,
                filter={"agent": self.name, "task_id": memory_key},
            )
            if enriched:
                previous_output = f"{enriched}\n\n{previous_output}" if previous_output else enriched
                logger.info("Injected memory into %s", self.name)

        system_message = self.system_message(inputs, is_training)
        user_message = build_user_message(
            self,
            inputs,
            description,
            previous_output,
            retry_reason,
            delegate_reason,
            output_format,
            replan_reason,
        )
        messages = await self._fit([ChatMessage("system", system_message), ChatMessage("user", user_message)])

        native_tools = self.tools if self.model_info.supports_tools and self.can_use_tools() else []
        output = await self.invoke_model(messages, task_id=task_id, tools=native_tools)
        logger.info("📤 [Agent Output] %s result:\n%s", self.name, output)

        if self.can_use_tools() and not self.model_info.supports_tools and _tool_requests(output):
            resolved = await self._resolve_tools(
                output, system_message, description, output_format, task_id, depth=0
            )
            if resolved is not None:
                return resolved

        if self.delegation_disallowed and protocol.is_delegation_request(output):
            logger.warning("⛔ [Delegation Blocked] %s is not allowed to delegate further.", self.name)
            return protocol.replace_delegations(output, BLOCKED_DELEGATION)

        if self.can_delegate():
            requests = protocol.delegations(output)
            if requests:
                request = requests[0]
                self.increment_delegation()
                logger.info("🔁 [Delegation] %s → %s | Task: %r", self.name, request.agent, request.task)
                return DelegationMarker(delegate_to=request.agent, task=request.task)

        if (
            not is_training
            and execution_mode is ExecutionMode.SEQUENTIAL
            and self.memory_scope is not MemoryScope.NONE
            and self.memory_provider is not None
        ):
            await self.memory_provider.store_memory(
                MemoryRecord(
                    task_id=memory_key,
                    input=json.dumps(dict(inputs), default=str, ensure_ascii=False),
                    output=output,
                    metadata={"agent": self.name},
                )
            )
        return output

    async def _resolve_tools(
        self,
        output: str,
        system_message: str,
        description: str,
        output_format: OutputFormat | str | None,
        task_id: str,
        depth: int,
    ) -> Optional[str]:
        """Execute requested tools and feed the results back, recursing on new requests."""
        if depth > self.max_tool_depth:
            logger.warning("Tool recursion depth (%s) reached for %s", self.max_tool_depth, self.name)
            return None
        requests = _tool_requests(output)
        if not requests:
            return None

        responses = []
        for request in requests:
            if isinstance(request, protocol.MalformedRequest):
                responses.append(f"❌ Failed to parse tool args for {request.target or 'tool'}: {request.reason}")
                continue
            name = self.tool_executor.tool_name(request.tool)
            result = await self.tool_executor.execute_tool(request.tool, request.args, task_id=task_id)
            rendered_args = json.dumps(request.args, ensure_ascii=False)
            responses.append(f"Tool Response for {name}({rendered_args}):\n{normalize_output(result)}")
            logger.info("🔧 [Tool Used] %s(%s) by '%s'", name, rendered_args, self.name)

        messages = await self._fit(build_tool_followup(system_message, responses, description, output_format))
        new_output = await self.invoke_model(messages, task_id=task_id)
        if _tool_requests(new_output):
            deeper = await self._resolve_tools(
                new_output, system_message, description, output_format, task_id, depth + 1
            )
            if deeper is not None:
                return deeper
        return new_output


def _tool_requests(text: str) -> List[Union[protocol.ToolRequest, protocol.MalformedRequest]]:
    return [
        request
        for request in protocol.scan(text)
        if isinstance(request, protocol.ToolRequest)
        or (isinstance(request, protocol.MalformedRequest) and request.kind == "tool")
    ]
