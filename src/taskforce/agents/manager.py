"""Manager agent that plans, assigns and reviews work for the other agents."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import ConfigError
from ..enums import PlanMode
from ..llm.provider import ChatMessage, LLMProvider
from ..tasks.base import Task, clean_markdown_json
from ..telemetry import TelemetrySink
from .base import Agent

logger = logging.getLogger(__name__)

MANAGER_NAME = "Smart Manager"


class PlanError(ConfigError):
    """The model returned a plan that cannot be used."""


class TaskOrder(BaseModel):
    """Ordered subset of task ids chosen by the manager."""

    model_config = ConfigDict(extra="forbid")

    tasks: List[str] = Field(description="Ids of the tasks to execute, in execution order")


class PlannedTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    description: str
    agent: str = ""
    output_format: str = Field(default="text", alias="outputFormat")
    input_from_task: Optional[str] = Field(default=None, alias="inputFromTask")

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            name=self.name or self.id,
            description=self.description,
            output_format=self.output_format or "text",
            agent=self.agent or "",
            input_from_task=self.input_from_task or None,
        )


class DynamicPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    execution_mode: PlanMode = Field(alias="executionMode")
    tasks: List[PlannedTask]

    def build_tasks(self) -> List[Task]:
        return [planned.to_task() for planned in self.tasks]

    def agent_names(self) -> Set[str]:
        return {planned.agent for planned in self.tasks if planned.agent}


class FinalReview(BaseModel):
    action: Literal["accept", "replan", "abort"]
    reason: Optional[str] = None


class _EvaluationAnswer(BaseModel):
    action: Literal["accept", "retry", "delegate"]
    retry_with: Optional[str] = Field(default=None, alias="retryWith")
    delegate_to: Optional[str] = Field(default=None, alias="delegateTo")
    reason: Optional[str] = None


@dataclass
class Accept:
    pass


@dataclass
class Retry:
    target: Optional[Agent] = None
    reason: Optional[str] = None


@dataclass
class Delegate:
    target: Agent
    reason: str = ""


EvaluationDecision = Union[Accept, Retry, Delegate]


def _roster(agents: Sequence[Agent], separator: str = " / ") -> str:
    return "\n".join(f"- {agent.name}: {agent.role}{separator}{agent.goal}" for agent in agents)


class ManagerAgent(Agent):
    """Coordinator used by hierarchical and ai-driven runs."""

    def __init__(
        self,
        llm_provider: LLMProvider,
        *,
        model: str | None = None,
        telemetry: TelemetrySink | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(
            name=MANAGER_NAME,
            role="Autonomous Task Coordinator",
            goal="Dynamically plan, assign, and evaluate tasks based on input context.",
            backstory="You are responsible for delegating and validating the entire task pipeline.",
            llm_provider=llm_provider,
            model=model,
            allow_delegation=False,
            telemetry=telemetry,
            verbose=verbose,
        )
        self._evaluation_history: Dict[str, Set[str]] = {}

    async def _ask(self, prompt: str, system: str | None = None) -> str:
        messages = [ChatMessage("system", system)] if system else []
        messages.append(ChatMessage("user", prompt))
        return await self.invoke_model(messages)

    # -- planning -------------------------------------------------------------------

    async def plan_tasks(self, tasks: Sequence[Task], context: Mapping[str, Any]) -> List[Task]:
        listing = "\n".join(
            f"{index}. {task.id}: {task.name} => {task.description}" for index, task in enumerate(tasks, start=1)
        )
        prompt = (
            f"User input:\n{json.dumps(dict(context), indent=2, default=str, ensure_ascii=False)}\n\n"
            f"Which of the following tasks should be executed, and in what order?\n\n{listing}\n\n"
            "You will return a JSON object that follows this JSON schema:\n\n"
            f"{json.dumps(TaskOrder.model_json_schema(), indent=2)}\n\n"
            "ONLY return a valid JSON object matching the schema above.\n"
            "Do not wrap in markdown.\n"
            "Do not include explanation, comments, or extra keys."
        )
        raw = await self._ask(prompt, system="You are an intelligent project manager.")
        logger.info("[Manager Agent] Model returned task order:\n%s", raw)
        try:
            order = TaskOrder.model_validate_json(clean_markdown_json(raw))
        except ValidationError as exc:
            raise PlanError(f"Manager returned an invalid task order: {raw!r}") from exc

        by_id = {task.id: task for task in tasks}
        planned: List[Task] = []
        seen: Set[str] = set()
        for task_id in order.tasks:
            if task_id in by_id and task_id not in seen:
                planned.append(by_id[task_id])
                seen.add(task_id)
        return planned

    async def decompose_task(self, task: Task, agents: Sequence[Agent]) -> List[Dict[str, str]]:
        """Split ``task`` into subtasks; falls back to the task itself on bad output."""
        prompt = (
            "You are a task decomposition AI. Given the task below, break it down into a list of "
            "ordered subtasks with 'id', 'name', 'description', and assign each subtask to one of "
            "the agents provided.\n\n"
            f"Task:\n{task.description}\n\n"
            f"Available agents:\n{_roster(agents)}\n\n"
            "Each agent is an expert in their role. Assign tasks considering their expertise.\n\n"
            "Return only a valid JSON array, no markdown, no explanations.\n\n"
            "Example:\n"
            '[\n  { "id": "collect_data", "name": "Collect data", "description": "Gather all relevant data", '
            '"agent": "Data Analyst" }\n]'
        )
        fallback = [{"id": "main", "name": task.name, "description": task.description, "agent": task.agent}]
        raw = await self._ask(prompt, system="You are an expert task planner.")
        try:
            parsed = json.loads(clean_markdown_json(raw))
        except json.JSONDecodeError:
            logger.warning("Failed to parse decomposition response, keeping the original task")
            return fallback
        if not isinstance(parsed, list) or not parsed:
            logger.warning("Decomposition response is not a non-empty array, keeping the original task")
            return fallback

        names = {agent.name for agent in agents}
        subtasks: List[Dict[str, str]] = []
        for item in parsed:
            if not isinstance(item, dict) or not item.get("id") or not item.get("description"):
                logger.warning("Decomposition entry %r is incomplete, keeping the original task", item)
                return fallback
            agent = str(item.get("agent") or "")
            subtasks.append(
                {
                    "id": str(item["id"]),
                    "name": str(item.get("name") or item["id"]),
                    "description": str(item["description"]),
                    "agent": agent if agent in names else "",
                }
            )
        return subtasks

    async def assign_agent(self, task: Task, agents: Sequence[Agent]) -> Agent:
        if not agents:
            raise ConfigError(f"No agents available to assign task '{task.id}'")
        if task.agent:
            for agent in agents:
                if agent.name == task.agent:
                    return agent

        prompt = (
            f"Task: {task.name} - {task.description} - task id: {task.id}\n\n"
            f"Available agents:\n{_roster(agents)}\n\n"
            "Which agent is the best fit for this task? Return the agent's name as a single string."
        )
        raw = await self._ask(prompt, system="You are responsible for assigning tasks to agents.")
        selected = raw.strip().replace('"', "")
        logger.info("[Manager Agent] Assigned agent for task '%s': %s", task.name, selected)
        for agent in agents:
            if agent.name == selected:
                return agent
        return agents[0]

    # -- evaluation -------------------------------------------------------------------

    async def evaluate_task_output(self, task: Task, output: str, agents: Sequence[Agent]) -> EvaluationDecision:
        available = "\n".join(f"- {agent.name}" for agent in agents)
        prompt = (
            "You are an autonomous project manager evaluating the output of a task completed by an agent.\n\n"
            "Evaluate whether the output sufficiently meets the task description, and decide how to proceed.\n\n"
            "ONLY respond with a pure JSON object matching one of the following formats.\n\n"
            '1. Accept the result:\n{ "action": "accept" }\n\n'
            '2. Retry with the same or another agent:\n{ "action": "retry" }\nor\n'
            '{ "action": "retry", "retryWith": "Agent Name", "reason": "Why retry is needed" }\n\n'
            "3. Delegate to another agent:\n"
            '{ "action": "delegate", "delegateTo": "Agent Name", "reason": "Clear and concise reason" }\n\n'
            f"Available agents:\n{available}\n\n"
            f"Task:\nTask id: {task.id} - Task Name: {task.name} - Task Description: {task.description}\n\n"
            f"Output:\n{output}"
        )
        raw = await self._ask(prompt)
        try:
            answer = _EvaluationAnswer.model_validate_json(clean_markdown_json(raw))
        except ValidationError as exc:
            logger.warning("❌ Failed to parse evaluation decision for task '%s': %s", task.id, exc)
            return Retry()

        history = self._evaluation_history.setdefault(task.id, set())
        proposed = answer.retry_with or answer.delegate_to
        if proposed and proposed in history:
            logger.warning(
                "🛑 Evaluation loop detected for task '%s'. Agent '%s' was already used.", task.name, proposed
            )
            return Accept()

        by_name = {agent.name: agent for agent in agents}
        if answer.action == "accept":
            return Accept()
        if answer.action == "retry":
            if answer.retry_with:
                history.add(answer.retry_with)
            return Retry(target=by_name.get(answer.retry_with or ""), reason=answer.reason)

        target = by_name.get(answer.delegate_to or "")
        if target is None:
            logger.warning("Manager proposed unknown delegate '%s' for task '%s'", answer.delegate_to, task.id)
            return Retry()
        history.add(target.name)
        return Delegate(target=target, reason=answer.reason or "")

    def reset_history(self, task_id: str | None = None) -> None:
        if task_id is None:
            self._evaluation_history.clear()
        else:
            self._evaluation_history.pop(task_id, None)

    async def review_final_output(self, context: Mapping[str, Any]) -> FinalReview:
        prompt = (
            "Here is the final output of the task force execution:\n"
            f"{json.dumps(dict(context), indent=2, default=str, ensure_ascii=False)}\n\n"
            "As the manager agent, check if any task output appears invalid, empty, unresolved "
            '(like DELEGATE(...)), or asks for more user input (e.g. "please provide").\n\n'
            'If everything looks complete, respond with:\n{ "action": "accept" }\n\n'
            'If outputs look incomplete or delegations failed, respond with:\n{ "action": "replan", "reason": "..." }\n\n'
            'If critical errors or unsafe instructions are detected, respond with:\n{ "action": "abort", "reason": "..." }'
        )
        raw = await self._ask(prompt)
        try:
            return FinalReview.model_validate_json(clean_markdown_json(raw))
        except ValidationError as exc:
            logger.warning("Could not parse final review, accepting output: %s", exc)
            return FinalReview(action="accept", reason="unparseable review")

    async def generate_dynamic_plan(self, inputs: Mapping[str, Any], agents: Sequence[Agent]) -> DynamicPlan:
        roster = "\n".join(f'- "{agent.name}": {agent.role} — {agent.goal}' for agent in agents)
        prompt = (
            f"Given the following input:\n{json.dumps(dict(inputs), default=str, ensure_ascii=False)}\n\n"
            f"Available agents (choose agent field EXACTLY as written, case-sensitive):\n{roster}\n\n"
            "IMPORTANT RULES:\n"
            '- For each task, the "agent" field MUST be chosen from the above list of agent names, exactly as shown.\n'
            "- Do NOT invent, translate, or modify agent names.\n\n"
            "Your job:\n"
            "1. Generate an ordered list of tasks.\n"
            "2. Recommend the best execution mode for the pipeline:\n"
            '   - "parallel": all tasks are independent and can be run in parallel.\n'
            '   - "hierarchical": tasks have dependencies (use the inputFromTask field).\n'
            '   - "sequential": single step or strictly linear.\n\n'
            "Return only a valid JSON object with two fields:\n"
            '- "executionMode": "parallel" | "hierarchical" | "sequential"\n'
            '- "tasks": [ ... ]\n\n'
            "Example:\n"
            '{\n  "executionMode": "hierarchical",\n  "tasks": [\n'
            '    { "id": "plan", "name": "Content Plan", "description": "Plan content", "agent": "Planner" },\n'
            '    { "id": "write", "name": "Write Article", "description": "Write article based on the plan", '
            '"agent": "Writer", "inputFromTask": "plan" }\n  ]\n}'
        )
        raw = await self._ask(prompt, system="You are a workflow planner.")
        try:
            return DynamicPlan.model_validate_json(clean_markdown_json(raw))
        except ValidationError as exc:
            raise PlanError(f"[AI-Driven] Could not parse dynamic plan! Output:\n{raw}") from exc
