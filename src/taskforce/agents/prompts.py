"""Prompt construction for agents."""

from __future__ import annotations

import datetime as _dt
import re
import textwrap
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional

from ..enums import OutputFormat
from ..llm.provider import ChatMessage

if TYPE_CHECKING:
    from .base import Agent

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def interpolate(template: str, inputs: Mapping[str, Any]) -> str:
    """Fill ``{name}`` placeholders from ``inputs``; unknown names stay as-is."""

    def _replace(match: "re.Match[str]") -> str:
        value = inputs.get(match.group(1))
        if value is None or value == "":
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template or "")


def build_agent_directory(agent: "Agent", others: Iterable["Agent"]) -> str:
    return "\n".join(
        f"- {other.name}: {other.role} — {other.goal}" for other in others if other.name != agent.name
    )


def build_user_message(
    agent: "Agent",
    inputs: Mapping[str, Any],
    description: str,
    previous_output: Optional[str] = None,
    retry_reason: Optional[str] = None,
    delegate_reason: Optional[str] = None,
    output_format: Optional[str] = None,
    replan_reason: Optional[str] = None,
) -> str:
    parts = [
        f"Background:\n{interpolate(agent.backstory, inputs)}",
        f"Task:\n{interpolate(description, inputs)}",
    ]
    if previous_output and previous_output.strip():
        parts.append(f"Previous output:\n{previous_output.strip()}")
    if retry_reason and retry_reason.strip():
        parts.append(f"This task is being re-executed because: {retry_reason.strip()}")
    if delegate_reason and delegate_reason.strip():
        parts.append(f"This task was delegated to you because: {delegate_reason.strip()}")
    if replan_reason and replan_reason.strip():
        parts.append(f"This task is being re-executed because:\n{replan_reason.strip()}")

    if output_format:
        fmt = output_format.value if isinstance(output_format, OutputFormat) else str(output_format)
        if fmt.lower() == OutputFormat.TEXT.value:
            parts.append(f"Expected output format:\nReturn the result in {fmt} format.")
        else:
            parts.append(
                f"Expected output format:\nReturn ONLY the result in {fmt} format.\n"
                "Do NOT include any explanations, comments, or additional text."
            )
    return "\n\n".join(parts)


def build_identity_block(agent: "Agent", inputs: Mapping[str, Any]) -> str:
    if agent.system_prompt:
        return interpolate(agent.system_prompt, inputs)
    return f"You are a {agent.role}.\n\nGoal: {interpolate(agent.goal, inputs)}"


def build_tool_instructions(agent: "Agent") -> str:
    usage = agent.tool_executor.build_usage_docs()
    return textwrap.dedent(
        """\
        You should use tools whenever the topic needs current, missing, or external information.
        When in doubt, prefer tool usage.

        Before using any tool, ask yourself:
        1. What exactly is my task?
        2. Is there any missing information or uncertainty?
        3. Would using a tool help me complete the task more accurately?

        Available Tools:
        {usage}

        Tool Usage Instructions:
        - Use: TOOL(toolName, {{"query": "your search query"}})
        - Arguments must be a single JSON value.
        - Tools may be used more than once.
        - Do not continue the main task until tool results are returned.
        - Tool names are case-sensitive. Use them exactly as listed.

        Do NOT:
        - Modify the tool name
        - Write your own function-like formats (e.g., toolName(...))
        - Add explanations or reasoning inside the tool call"""
    ).format(usage=usage)


def build_delegation_instructions(agent: "Agent", directory: str) -> str:
    return textwrap.dedent(
        """\
        Delegation Instructions:

        You may delegate work to another agent ONLY IF:
        - You cannot complete the task properly.
        - The previous step was incomplete or unclear.
        - Another agent is more suitable.

        Use the format:
        DELEGATE(agentName, "task to delegate")

        The task must be a double-quoted string; escape inner quotes with a backslash.

        Rules:
        - Do not continue after delegating.
        - Do not summarize previous work.
        - Delegation is optional. Use only if necessary.

        Available agents for delegation:
        {directory}"""
    ).format(directory=directory or "- none")


def build_guardrails(agent: "Agent") -> str:
    rules = "\n".join(f"{index}. {rule}" for index, rule in enumerate(agent.guardrails, start=1))
    return f"Rules you must follow:\n{rules}"


def build_training_insights(agent: "Agent") -> Optional[str]:
    summary = (agent.training.final_summary if agent.training else "").strip()
    if len(summary) <= 5 or " " not in summary:
        return None
    return f"Training Insights:\n- {summary}"


def build_system_message(
    agent: "Agent",
    inputs: Mapping[str, Any],
    *,
    directory: str = "",
    is_training: bool = False,
    today: Optional[_dt.date] = None,
) -> str:
    parts: List[str] = [build_identity_block(agent, inputs)]
    if agent.can_use_tools() and not agent.model_info.supports_tools:
        parts.append(build_tool_instructions(agent))
    if agent.allow_delegation and not agent.delegation_disallowed and not is_training:
        parts.append(build_delegation_instructions(agent, directory))
    if agent.guardrails:
        parts.append(build_guardrails(agent))
    insights = build_training_insights(agent)
    if insights and not is_training:
        parts.append(insights)
    parts.append(f"Date: {(today or _dt.date.today()).strftime('%d %B %Y')}")
    return "\n\n".join(parts)


def build_tool_followup(
    system_message: str, tool_responses: List[str], description: str, output_format: Optional[str]
) -> List[ChatMessage]:
    """Messages that hand tool results back to the model."""
    content = "Tool results:\n\n" + "\n\n".join(tool_responses) + f"\n\nNow complete this task:\n\n{description}"
    if output_format:
        fmt = output_format.value if isinstance(output_format, OutputFormat) else str(output_format)
        content += f"\n\nFormat: {fmt}"
    return [ChatMessage("system", system_message), ChatMessage("user", content)]


def normalize_output(text: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{2,}", "\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()
