"""High-level orchestration of agents working through a task plan."""

from __future__ import annotations

import inspect
import json
import logging
import pathlib
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

from ..config import AgentSpec, ConfigError, DefaultsSpec, OrchestrationSpec, ProjectConfig, instantiate_from_path
from ..enums import ExecutionMode, MemoryScope, PlanMode
from ..llm.provider import ChatMessage, LLMProvider
from ..logging_utils import log_task_chaining, start_run_log
from ..memory.retrieval import Retriever
from ..memory.simple import MemoryRecord, memory_provider_for
from ..tasks.base import Task
from ..tasks.graph import TaskGraph, dependents_closure, topological_sort
from ..tasks.scheduler import DependencyScheduler
from ..telemetry import TelemetrySink
from ..tools.builtin import register_builtin_tools
from ..tools.executor import ToolExecutor
from ..tools.registry import ToolRegistry
from ..training import (
    TrainingExample,
    TrainingResult,
    distillation_prompt,
    load_training,
    parse_distillation,
    save_training,
)
from . import protocol
from .base import Agent, AgentOutput, AgentRegistry, DelegationMarker
from .delegation import check_delegation_score, check_delegation_validity, update_delegation_chain
from .manager import Delegate, ManagerAgent, PlanError, Retry
from .prompts import interpolate

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "taskforce.llm.provider:OllamaProvider"
REPLAN_REASON_KEY = "__replan_reason__"
REPLAN_COUNT_KEY = "__replan_count__"
BOOKKEEPING_KEYS = (REPLAN_REASON_KEY, REPLAN_COUNT_KEY)
LOOP_LIMIT_NOTICE = "⚠️ Delegation loop or hop limit reached. Accepting output as-is."
UNRESOLVED_NOTICE = "⚠️ Unresolved DELEGATE() in final output. Original content:\n"
FORCED_EXECUTION_REASON = "Delegation blocked. Forced to execute."

StepListener = Callable[[Dict[str, Any]], None]
FeedbackFunction = Callable[[Agent, str], Union[str, Awaitable[str]]]


@dataclass
class OrchestratorSettings:
    """Execution settings for one orchestrator."""

    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    allow_parallel: bool = False
    max_retry_per_task: int = 5
    max_delegate_per_task: int = 3
    max_global_replans: int = 2
    enable_replanning: bool = True
    enable_ai_planning: bool = True
    manager_model: Optional[str] = None
    memory: bool = False
    memory_dir: str = "taskforce-db"
    verbose: bool = False
    log_dir: Optional[str] = None
    chained_input_limit: int = 3000
    tool_summary_threshold: int = 1000

    def __post_init__(self) -> None:
        try:
            self.execution_mode = ExecutionMode(self.execution_mode)
        except ValueError as exc:
            raise ConfigError(f"Unknown execution mode '{self.execution_mode}'") from exc

    @classmethod
    def from_spec(cls, spec: OrchestrationSpec, defaults: DefaultsSpec | None = None) -> "OrchestratorSettings":
        return cls(
            execution_mode=spec.execution_mode,
            allow_parallel=spec.allow_parallel,
            max_retry_per_task=spec.max_retry_per_task,
            max_delegate_per_task=spec.max_delegate_per_task,
            max_global_replans=spec.max_global_replans,
            enable_replanning=spec.enable_replanning,
            enable_ai_planning=spec.enable_ai_planning,
            manager_model=spec.manager_model,
            memory=spec.memory,
            memory_dir=defaults.memory_dir if defaults else "taskforce-db",
            verbose=spec.verbose,
            log_dir=spec.log_dir,
        )


@dataclass
class RunResult:
    result: Dict[str, Any] = field(default_factory=dict)
    executed_task_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"result": dict(self.result), "executedTaskIds": list(self.executed_task_ids)}


def as_text(output: Any) -> str:
    if isinstance(output, DelegationMarker):
        return output.to_text()
    if isinstance(output, BaseException):
        return f"❌ {type(output).__name__}: {output}"
    return "" if output is None else str(output)


def _is_delegate_json(text: str) -> bool:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return False
    return isinstance(parsed, dict) and bool(parsed.get("__delegate__"))


def is_unresolved(output: Any) -> bool:
    """True for delegation markers and text still carrying a delegation request."""
    if isinstance(output, DelegationMarker):
        return True
    if isinstance(output, str):
        return protocol.has_delegation_marker(output) or _is_delegate_json(output)
    return False


def is_failed(output: Any) -> bool:
    if output is None or isinstance(output, BaseException):
        return True
    if is_unresolved(output):
        return True
    text = str(output)
    return not text.strip() or "please provide" in text


def public_context(context: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in context.items() if key not in BOOKKEEPING_KEYS}


class Orchestrator:
    """Runs a set of tasks with a set of agents.

    Sequential runs walk the tasks in declared order. Hierarchical and
    ai-driven runs go through the :class:`ManagerAgent`, which plans the
    work, evaluates every output and may trigger a bounded global replan.
    """

    def __init__(
        self,
        agents: Sequence[Agent],
        tasks: Sequence[Task],
        settings: OrchestratorSettings | None = None,
        *,
        retriever: Retriever | None = None,
        telemetry: TelemetrySink | None = None,
        tool_registry: ToolRegistry | None = None,
        manager: ManagerAgent | None = None,
        manager_provider: LLMProvider | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.graph = TaskGraph(tasks)
        self.tasks: List[Task] = self.graph.tasks
        self.registry = AgentRegistry(agents)
        for task in self.tasks:
            if task.agent and task.agent not in self.registry:
                raise ConfigError(f"Task '{task.id}' references unknown agent '{task.agent}'")
        self.retriever = retriever
        self.telemetry = telemetry
        self.tool_registry = tool_registry
        self._listeners: List[StepListener] = []
        self._replan_count = 0

        for agent in self.registry:
            agent.verbose = agent.verbose or self.settings.verbose
            if agent.telemetry is None:
                agent.telemetry = telemetry
            agent.set_event_hook(self._emit)

        self.manager: Optional[ManagerAgent] = manager
        if self.manager is None and self.settings.execution_mode in (
            ExecutionMode.HIERARCHICAL,
            ExecutionMode.AI_DRIVEN,
        ):
            first = self.registry.all()[0] if len(self.registry) else None
            provider = manager_provider or (first.llm_provider if first else None)
            if provider is None:
                raise ConfigError("A manager model provider is required for hierarchical runs")
            self.manager = ManagerAgent(
                provider,
                model=self.settings.manager_model or (first.model if first else None),
                telemetry=telemetry,
                verbose=self.settings.verbose,
            )

        if self.settings.memory:
            self._attach_memory()

    # -- construction from config ------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: ProjectConfig,
        *,
        tool_registry: ToolRegistry | None = None,
        retriever: Retriever | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> "Orchestrator":
        registry = tool_registry or ToolRegistry()
        register_builtin_tools(registry)
        registry.configure_from_specs(config.tool_specs)
        settings = OrchestratorSettings.from_spec(config.orchestration, config.defaults)
        agents = [cls._materialize_agent(spec, config, registry) for spec in config.agents.values()]
        tasks = [
            Task(
                id=spec.id,
                name=spec.name,
                description=spec.description,
                output_format=spec.output_format,
                agent=spec.agent,
                input_from_task=spec.input_from_task,
                expected_role=spec.expected_role,
            )
            for spec in config.tasks
        ]
        manager_provider = None
        if config.defaults.llm_provider:
            manager_provider = instantiate_from_path(config.defaults.llm_provider, **config.defaults.llm_params)
        return cls(
            agents,
            tasks,
            settings,
            retriever=retriever,
            telemetry=telemetry,
            tool_registry=registry,
            manager_provider=manager_provider,
        )

    @staticmethod
    def _materialize_agent(spec: AgentSpec, config: ProjectConfig, registry: ToolRegistry) -> Agent:
        provider_path = spec.llm_provider or config.defaults.llm_provider or DEFAULT_PROVIDER
        provider_params = dict(config.defaults.llm_params)
        provider_params.update(spec.llm_params)
        provider: LLMProvider = instantiate_from_path(provider_path, **provider_params)
        memory_provider = None
        if spec.memory.type:
            memory_provider = instantiate_from_path(spec.memory.type, **spec.memory.params)
        return Agent(
            name=spec.name,
            role=spec.role,
            goal=spec.goal,
            backstory=spec.backstory,
            llm_provider=provider,
            model=spec.model or config.defaults.model,
            model_options=spec.model_options,
            tools=registry.resolve(spec.tools),
            guardrails=spec.guardrails,
            system_prompt=spec.system_prompt,
            allow_delegation=spec.allow_delegation,
            memory_scope=spec.memory.scope,
            memory_provider=memory_provider,
            memory_mode=spec.memory.mode,
            training=load_training(spec.name, config.defaults.training_dir),
            auto_truncate_history=spec.auto_truncate_history,
        )

    def _attach_memory(self) -> None:
        for agent in self.registry:
            if agent.memory_scope is MemoryScope.NONE or agent.memory_provider is not None:
                continue
            agent.memory_provider = memory_provider_for(
                agent.memory_scope, agent.name, agent.memory_mode, self.settings.memory_dir
            )

    # -- step events ------------------------------------------------------------------

    def subscribe(self, listener: StepListener) -> Callable[[], None]:
        """Register ``listener`` for step events; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, payload: Dict[str, Any]) -> None:
        event = {**payload, "timestamp": time.time()}
        for listener in list(self._listeners):
            listener(event)

    # -- public entry points ------------------------------------------------------------

    async def run(self, inputs: Mapping[str, Any] | None = None) -> RunResult:
        inputs = dict(inputs or {})
        if self.settings.log_dir:
            start_run_log(self.settings.log_dir)
        logger.info(
            "🚀 [Task Force] Running with %s agents and %s tasks",
            ", ".join(agent.name for agent in self.registry),
            ", ".join(task.name for task in self.tasks),
        )
        for agent in self.registry:
            agent.reset()
        for task in self.tasks:
            task.execution_context.reset()
        self._replan_count = 0
        if self.manager is not None:
            self.manager.reset_history()

        mode = self.settings.execution_mode
        if mode is ExecutionMode.HIERARCHICAL:
            context, executed = await self.run_hierarchical(inputs)
        elif mode is ExecutionMode.AI_DRIVEN:
            context, executed = await self.run_dynamic(inputs)
        else:
            context = await self.run_sequential(inputs)
            executed = [task.id for task in self.tasks]
        return RunResult(result=self._collect(context), executed_task_ids=executed)

    def _collect(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        return {task.id: as_text(context[task.id]) for task in self.tasks if task.id in context}

    # -- sequential ---------------------------------------------------------------------

    async def run_sequential(self, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        context: Dict[str, Any] = dict(inputs)
        previous = ""
        index = 0
        while index < len(self.tasks):
            task = self.tasks[index]
            if not task.agent:
                raise ConfigError(f"Task '{task.id}' has no agent; sequential runs need every task assigned")
            agent = self.registry.require(task.agent)
            logger.info("📝 [Task] Starting task '%s' assigned to '%s'", task.name, agent.name)
            output = await self._run_agent(
                agent, task, context, previous_output=previous, execution_mode=ExecutionMode.SEQUENTIAL
            )
            if isinstance(output, DelegationMarker):
                output = await self._follow_delegation(task, agent, output, context)
            logger.info("✅ [Task] Completed '%s'", task.name)
            context[task.id] = output
            previous = as_text(output)
            self._emit({"agent": agent.name, "task": task.name, "action": "completed", "output": previous})
            index += 1
        return context

    async def _follow_delegation(
        self, task: Task, agent: Agent, marker: DelegationMarker, context: MutableMapping[str, Any]
    ) -> str:
        """Hand ``task`` to the requested delegate(s) until someone answers."""
        chain = task.execution_context.delegation_chain
        if agent.name not in chain:
            update_delegation_chain(task, agent)
        current_agent: Agent = agent
        current: AgentOutput = marker
        while isinstance(current, DelegationMarker):
            delegate = self.registry.get(current.delegate_to)
            if delegate is None:
                raise ConfigError(f"❌ Agent '{current.delegate_to}' not found")
            check = check_delegation_validity(delegate, task)
            if delegate is current_agent or not check.can_delegate:
                logger.warning(
                    "🚫 Delegation from '%s' to '%s' blocked: %s",
                    current_agent.name,
                    delegate.name,
                    check.reason or "self delegation",
                )
                return await self._forced_run(current_agent, task, context, as_text(current))
            update_delegation_chain(task, delegate)
            logger.info("🧭 %s delegates to %s", current_agent.name, delegate.name)
            self._emit(
                {
                    "agent": current_agent.name,
                    "task": task.name,
                    "action": "delegated",
                    "to": delegate.name,
                    "reason": current.task,
                }
            )
            result = await self._run_agent(
                delegate,
                task,
                context,
                description=current.task,
                previous_output=as_text(current),
                execution_mode=ExecutionMode.SEQUENTIAL,
            )
            log_task_chaining(current_agent.name, delegate.name, as_text(result))
            current_agent, current = delegate, result
        return current

    # -- hierarchical ---------------------------------------------------------------------

    def _require_manager(self) -> ManagerAgent:
        if self.manager is None:
            raise ConfigError("Manager agent not set for hierarchical execution.")
        return self.manager

    async def run_hierarchical(self, inputs: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        self._require_manager()
        if len(self.tasks) == 1 and self.settings.enable_ai_planning:
            main = self.tasks[0]
            subtasks = await self.decompose(main)
            logger.info("[TaskForce] Decomposed main task '%s' into %s subtasks.", main.name, len(subtasks))
            self._replace_tasks(subtasks)

        plan, context = await self.create_task_plan(inputs)
        executed = [task.id for task in plan]
        parallel = self.settings.allow_parallel
        context = await self._execute_plan(plan, context, parallel)
        context = await self.review_final_output(context, parallel)
        return context, executed

    def _replace_tasks(self, tasks: Sequence[Task]) -> None:
        self.graph = TaskGraph(tasks)
        self.tasks = self.graph.tasks

    async def decompose(self, task: Task) -> List[Task]:
        manager = self._require_manager()
        subtasks: List[Task] = []
        seen = set()
        for item in await manager.decompose_task(task, self.registry.all()):
            if item["id"] in seen:
                continue
            seen.add(item["id"])
            subtasks.append(
                Task(id=item["id"], name=item["name"], description=item["description"], agent=item["agent"])
            )
        return subtasks

    async def create_task_plan(self, inputs: Mapping[str, Any]) -> Tuple[List[Task], Dict[str, Any]]:
        manager = self._require_manager()
        context: Dict[str, Any] = dict(inputs)
        plan = await manager.plan_tasks(self.tasks, public_context(context))
        plan = topological_sort(plan)
        for task in plan:
            task.execution_context.reset()
        return plan, context

    async def _execute_plan(
        self, plan: Sequence[Task], context: Dict[str, Any], parallel: bool
    ) -> Dict[str, Any]:
        if parallel:
            return await self.run_parallel(plan, context)
        return await self.run_plan(plan, context)

    async def _agent_for(self, task: Task) -> Agent:
        if task.agent:
            return self.registry.require(task.agent)
        return await self._require_manager().assign_agent(task, self.registry.all())

    async def run_plan(self, plan: Sequence[Task], context: Dict[str, Any]) -> Dict[str, Any]:
        """Run ``plan`` one task at a time, each through the evaluation loop."""
        for task in plan:
            context[task.id] = await self._execute_task(task, context)
        return context

    async def run_parallel(self, plan: Sequence[Task], context: Dict[str, Any]) -> Dict[str, Any]:
        """Run ``plan`` concurrently, gating each task on its predecessor."""

        async def execute(task: Task) -> str:
            output = await self._execute_task(task, context)
            if not is_unresolved(output):
                context[task.id] = output
            return output

        results = await DependencyScheduler(plan, context, execute).run()
        merged = dict(context)
        merged.update(results)
        return merged

    async def _execute_task(self, task: Task, context: MutableMapping[str, Any]) -> str:
        agent = await self._agent_for(task)
        logger.info("🧩 [Task] Running '%s' with '%s'", task.name, agent.name)
        previous = self.get_chained_input(task, context)
        output = await self._run_text(agent, task, context, previous_output=previous)
        final = await self.evaluate_task_loop(task, agent, context, output)
        if is_unresolved(final):
            logger.warning("⚠️ [Task '%s'] unresolved delegation output remains", task.name)
        return final

    def get_chained_input(self, task: Task, context: Mapping[str, Any]) -> str:
        source_id = task.input_from_task
        if not source_id:
            return ""
        value = context.get(source_id)
        if value is None or is_unresolved(value):
            return ""
        text = as_text(value)
        source = self.graph.get(source_id) if source_id in self.graph else None
        log_task_chaining(source.name if source else source_id, task.name, text)
        mapped = task.map_input(text)
        if not isinstance(mapped, str):
            mapped = json.dumps(mapped, ensure_ascii=False, default=str)
        limit = self.settings.chained_input_limit
        if len(mapped) > limit:
            mapped = mapped[:limit] + "\n\n[...truncated]"
        return mapped

    # -- per task execution ------------------------------------------------------------------

    async def _run_agent(
        self,
        agent: Agent,
        task: Task,
        context: Mapping[str, Any],
        *,
        description: str | None = None,
        previous_output: str | None = None,
        retry_reason: str | None = None,
        delegate_reason: str | None = None,
        execution_mode: ExecutionMode | None = None,
    ) -> AgentOutput:
        self._emit({"agent": agent.name, "task": task.name, "action": "start"})
        replan_reason = None
        if not task.execution_context.replan_reason_used:
            replan_reason = context.get(REPLAN_REASON_KEY)
        inputs = public_context(context)
        output = await agent.run_task(
            inputs,
            interpolate(description or task.description, inputs),
            task.output_format,
            previous_output,
            retry_reason,
            delegate_reason,
            replan_reason,
            execution_mode,
            self.retriever,
            task_id=task.id,
        )
        if replan_reason:
            task.execution_context.replan_reason_used = True
        return output

    async def _run_text(self, agent: Agent, task: Task, context: Mapping[str, Any], **kwargs: Any) -> str:
        return as_text(await self._run_agent(agent, task, context, **kwargs))

    async def _forced_run(
        self, agent: Agent, task: Task, context: Mapping[str, Any], previous_output: str
    ) -> str:
        """Run ``agent`` once more with delegation switched off."""
        agent.delegation_disallowed = True
        try:
            return await self._run_text(
                agent, task, context, previous_output=previous_output, delegate_reason=FORCED_EXECUTION_REASON
            )
        finally:
            agent.delegation_disallowed = False

    async def evaluate_task_loop(
        self, task: Task, agent: Agent, context: MutableMapping[str, Any], initial_output: str
    ) -> str:
        """Accept, retry or delegate ``task`` until the manager is satisfied or a bound is hit."""
        manager = self._require_manager()
        guard = check_delegation_validity(agent, task)
        if not guard.can_delegate:
            logger.warning("🚫 Delegation blocked for '%s': %s", task.name, guard.reason)
            return f"{LOOP_LIMIT_NOTICE}\n\n{initial_output}"
        update_delegation_chain(task, agent)

        final = initial_output
        current = agent
        retries = 0
        retry_reasons: List[str] = []
        weak_retry_used = False
        seen_delegations = set()
        max_retry = self.settings.max_retry_per_task

        while True:
            decision = await manager.evaluate_task_output(task, final, self.registry.all())
            logger.info("[Manager Agent] Evaluation decision for task '%s' by '%s': %s", task.name, current.name, decision)

            if isinstance(decision, Retry):
                retries += 1
                if retries >= max_retry:
                    logger.warning(
                        "🚫 Max retry count (%s) reached for task '%s'. Proceeding with last output.",
                        max_retry,
                        task.name,
                    )
                    break
                if decision.reason:
                    retry_reasons.append(decision.reason)
                retry_agent = decision.target or await self._agent_for(task)
                final = await self._run_text(
                    retry_agent, task, context, previous_output=final, retry_reason=decision.reason
                )
                current = retry_agent
                continue

            if isinstance(decision, Delegate):
                target = decision.target
                if (
                    target is current
                    or target.name == task.agent
                    or final == protocol.encode_delegate(target.name, task.description)
                    or final in seen_delegations
                ):
                    logger.warning("⚠️ [Delegation Loop Detected] '%s' forcing accept.", task.name)
                    break
                check = check_delegation_validity(target, task)
                if not check.can_delegate:
                    logger.warning("🚫 Delegation to '%s' blocked for '%s': %s", target.name, task.name, check.reason)
                    break
                update_delegation_chain(task, target)
                seen_delegations.add(final)
                self._emit(
                    {
                        "agent": current.name,
                        "task": task.name,
                        "action": "delegated",
                        "to": target.name,
                        "reason": decision.reason,
                    }
                )
                result = await self._run_text(
                    target, task, context, previous_output=final, delegate_reason=decision.reason
                )
                current = target
                if protocol.has_delegation_marker(result):
                    logger.warning("🚫 Output still contains unresolved DELEGATE(...) for task '%s'", task.name)
                    retries += 1
                    if retries < max_retry:
                        final = await self._run_text(
                            agent,
                            task,
                            context,
                            previous_output=result,
                            retry_reason="Unresolved DELEGATE after handling attempt",
                        )
                        current = agent
                        continue
                    final = f"{UNRESOLVED_NOTICE}{result}"
                    break
                final = result
                continue

            score = check_delegation_score(final)
            if score.is_weak and not weak_retry_used:
                weak_retry_used = True
                logger.warning(
                    "📊 [DelegationScore] Task '%s' by '%s' scored %s/10: %s",
                    task.name,
                    current.name,
                    score.score,
                    score.reason,
                )
                self._emit(
                    {
                        "agent": current.name,
                        "task": task.name,
                        "action": "delegation_score",
                        "score": score.score,
                        "reason": score.reason,
                    }
                )
                retries += 1
                if retries >= max_retry:
                    logger.warning("🚫 Max retry count reached despite weak delegation score.")
                    break
                final = await self._run_text(current, task, context, previous_output=final, retry_reason=score.reason)
                continue

            if retry_reasons:
                logger.info(
                    "🔁 [Retry Trace] Task '%s' accepted after %s retries. Reasons: %s",
                    task.name,
                    retries,
                    " | ".join(retry_reasons),
                )
            final = await self._resolve_markers(task, current, context, final)
            await self._persist_memory(current, task, context, final)
            break

        self._emit({"agent": current.name, "task": task.name, "action": "completed", "output": final})
        return final

    async def _resolve_markers(
        self, task: Task, agent: Agent, context: MutableMapping[str, Any], output: str
    ) -> str:
        depth = 0
        limit = self.settings.max_delegate_per_task
        while depth < limit:
            processed = await self.handle_delegation_and_tool_output(task, output, agent, context)
            if processed == output or protocol.has_delegation_marker(processed):
                if protocol.has_delegation_marker(processed):
                    logger.warning("⚠️ Unresolved DELEGATE() remains after delegation depth check")
                break
            output = processed
            depth += 1
        if depth >= limit:
            logger.warning("🚫 Max delegation depth for '%s'. Forcing execution by '%s'.", task.name, agent.name)
            output = await self._forced_run(agent, task, context, output)
        return output

    async def handle_delegation_and_tool_output(
        self, task: Task, output: str, agent: Agent, context: MutableMapping[str, Any]
    ) -> str:
        """Resolve an output that consists of exactly one ``DELEGATE``/``TOOL`` request."""
        request = protocol.decode_exact(output)

        if isinstance(request, protocol.DelegateRequest):
            delegate = self.registry.get(request.agent)
            if delegate is None:
                raise ConfigError(f"Agent '{request.agent}' not found")
            if delegate is agent:
                logger.warning("⚠️ Skipping self-delegation: %s", agent.name)
                return output
            check = check_delegation_validity(delegate, task)
            if not check.can_delegate:
                logger.warning("🚫 Delegation to '%s' blocked: %s", delegate.name, check.reason)
                return output
            update_delegation_chain(task, delegate)
            logger.info("📤 DELEGATE() triggered in task '%s': %s → %s", task.name, agent.name, delegate.name)
            self._emit(
                {"agent": agent.name, "task": task.name, "action": "delegated", "to": delegate.name, "reason": request.task}
            )
            result = await self._run_text(delegate, task, context, description=request.task, previous_output=output)
            log_task_chaining(agent.name, delegate.name, result)
            return result

        if isinstance(request, protocol.ToolRequest):
            executor = self._executor_for(agent, request.tool)
            logger.info("🔧 Running tool '%s' for task '%s' by agent '%s'", request.tool, task.name, agent.name)
            result = await executor.execute_tool(request.tool, request.args, task_id=task.id)
            if len(result) > self.settings.tool_summary_threshold:
                result = await agent.summarize(result)
                logger.info("📘 Tool result summarized for memory efficiency.")
            return await self._run_text(
                agent, task, context, previous_output=result, delegate_reason="Output was tool result"
            )

        if isinstance(request, protocol.MalformedRequest) and request.kind == "tool":
            return f"❌ Failed to parse tool call for '{request.target or 'tool'}': {request.reason}\n\n{output}"
        return output

    def _executor_for(self, agent: Agent, tool_id: str) -> ToolExecutor:
        if agent.tool_executor.get(tool_id) is not None:
            return agent.tool_executor
        if self.tool_registry is not None and tool_id in self.tool_registry:
            return ToolExecutor([self.tool_registry.get(tool_id)], agent_name=agent.name, on_event=self._emit)
        raise ConfigError(f"Tool '{tool_id}' not found")

    async def _persist_memory(self, agent: Agent, task: Task, context: Mapping[str, Any], output: str) -> None:
        if agent.memory_scope is MemoryScope.NONE or agent.memory_provider is None:
            return
        await agent.memory_provider.store_memory(
            MemoryRecord(
                task_id=task.id,
                input=json.dumps(public_context(context), default=str, ensure_ascii=False),
                output=output,
                metadata={"agent": agent.name},
            )
        )
        logger.info("🧠 [MemoryStore] Saved memory for %s by %s", task.name, agent.name)

    # -- review and replanning ------------------------------------------------------------------

    async def review_final_output(self, context: Dict[str, Any], parallel: bool) -> Dict[str, Any]:
        if not self.settings.enable_replanning:
            return context
        task_ids = {task.id for task in self.tasks}
        for key, value in context.items():
            if key not in task_ids:
                continue
            text = as_text(value)
            if "please provide" in text or is_unresolved(value):
                logger.info("🔁 System Check rejected final output due to unresolved result in task '%s'", key)
                context[REPLAN_REASON_KEY] = f"System Check: Unresolved output in task '{key}'"
                return await self.replan_run(context, parallel)

        review = await self._require_manager().review_final_output(public_context(context))
        if review.action == "replan":
            logger.info("🔁 [Manager Agent] rejected final output: %s", review.reason)
            context[REPLAN_REASON_KEY] = f"Manager Agent: {review.reason}"
            return await self.replan_run(context, parallel)
        if review.action == "abort":
            logger.warning("🛑 [Manager Agent] aborted final review: %s", review.reason)
        else:
            logger.info("✅ [Manager Agent] Final output accepted.")
        return context

    async def replan_run(self, context: Dict[str, Any], parallel: bool) -> Dict[str, Any]:
        """Re-run the failed part of the plan, keeping every healthy output."""
        limit = self.settings.max_global_replans
        if context.get(REPLAN_COUNT_KEY, 0) >= limit or self._replan_count >= limit:
            logger.warning("🚫 Replan limit (%s) reached. Aborting.", limit)
            return context

        self._replan_count += 1
        context[REPLAN_COUNT_KEY] = context.get(REPLAN_COUNT_KEY, 0) + 1
        logger.info(
            "🔁 Re-running task pipeline [attempt %s] due to: %s",
            context[REPLAN_COUNT_KEY],
            context.get(REPLAN_REASON_KEY),
        )
        self._emit({"action": "replan", "attempt": context[REPLAN_COUNT_KEY], "reason": context.get(REPLAN_REASON_KEY)})

        plan, fresh = await self.create_task_plan(context)
        failed = [task.id for task in plan if is_failed(context.get(task.id))]
        replan_ids = dependents_closure(plan, failed)
        subset = [task for task in plan if task.id in replan_ids]
        for task_id in replan_ids:
            fresh.pop(task_id, None)
            if self.manager is not None:
                self.manager.reset_history(task_id)
        for key in fresh:
            if key not in replan_ids and key not in BOOKKEEPING_KEYS:
                logger.debug("🔁 [Replan] Keeping output for '%s'", key)

        return await self._execute_plan(subset, fresh, parallel)

    # -- ai-driven --------------------------------------------------------------------------------

    async def run_dynamic(self, inputs: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        manager = self._require_manager()
        plan = await manager.generate_dynamic_plan(public_context(inputs), self.registry.all())
        unknown = sorted(name for name in plan.agent_names() if name not in self.registry)
        if unknown:
            raise PlanError(f"Dynamic plan uses unknown agents: {', '.join(unknown)}")
        self._replace_tasks(plan.build_tasks())
        ordered = self.graph.topological_order()
        context: Dict[str, Any] = dict(inputs)
        logger.info("[AI-Driven] Executing %s tasks in %s mode", len(ordered), plan.execution_mode.value)

        if plan.execution_mode is PlanMode.PARALLEL:
            context = await self.run_parallel(ordered, context)
        elif plan.execution_mode is PlanMode.HIERARCHICAL:
            context = await self.run_plan(ordered, context)
        else:
            for task in self.tasks:
                if not task.agent:
                    task.agent = (await manager.assign_agent(task, self.registry.all())).name
            context = await self.run_sequential(context)
        return context, [task.id for task in ordered]

    # -- training ------------------------------------------------------------------------------------

    async def train(
        self,
        iterations: int,
        inputs: Mapping[str, Any] | None,
        feedback: FeedbackFunction,
        directory: str | pathlib.Path | None = None,
    ) -> Dict[str, pathlib.Path]:
        """Collect human feedback on each agent's task and save distilled insights."""
        inputs = dict(inputs or {})
        saved: Dict[str, pathlib.Path] = {}
        for agent in self.registry:
            task = next((item for item in self.tasks if item.agent == agent.name), None)
            if task is None:
                logger.warning("⚠️ No task found for agent %s. Skipping training.", agent.name)
                continue
            previous = load_training(agent.name, directory) or TrainingResult()
            description = interpolate(task.description, inputs)
            examples: List[TrainingExample] = []
            for iteration in range(1, iterations + 1):
                logger.info("🔁 [%s] Iteration %s/%s", agent.name, iteration, iterations)
                initial = as_text(
                    await agent.run_task(
                        inputs,
                        description,
                        task.output_format,
                        "",
                        execution_mode=ExecutionMode.SEQUENTIAL,
                        retriever=self.retriever,
                        is_training=True,
                        task_id=task.id,
                    )
                )
                note = feedback(agent, initial)
                if inspect.isawaitable(note):
                    note = await note
                note = (note or "").strip()
                if not note:
                    logger.warning("⚠️ No feedback provided. Skipping iteration.")
                    continue
                improved = as_text(
                    await agent.run_task(
                        inputs,
                        description,
                        task.output_format,
                        f"{initial}\n\n[Feedback from user]: {note}",
                        execution_mode=ExecutionMode.SEQUENTIAL,
                        retriever=self.retriever,
                        is_training=True,
                        task_id=task.id,
                    )
                )
                examples.append(TrainingExample(initial, note, improved))

            suggestions = previous.suggestions + [example.human_feedback for example in examples]
            raw = await agent.invoke_model([ChatMessage("user", distillation_prompt(suggestions))])
            summary, quality = parse_distillation(raw)
            result = TrainingResult(suggestions=suggestions, quality=quality, final_summary=summary)
            saved[agent.name] = save_training(agent.name, result, directory)
            agent.training = result
        return saved
