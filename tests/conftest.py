"""Shared fixtures for the taskforce test-suite."""

from typing import Callable, Dict, List

import pytest

from taskforce.agents.base import Agent
from taskforce.agents.manager import ManagerAgent
from taskforce.llm.provider import CallableProvider, StaticResponseProvider


def provider_for(replies):
    """A fake provider: fixed text, a list replayed in order, or a function."""
    if callable(replies):
        return CallableProvider(replies)
    if isinstance(replies, str):
        return CallableProvider(lambda messages, context: replies)
    return StaticResponseProvider(list(replies))


class ManagerScript:
    """Answers manager prompts by recognising which question is being asked.

    Replies for a kind are consumed in order; the last one is repeated.
    """

    MARKERS = {
        "plan": "Which of the following tasks should be executed",
        "decompose": "task decomposition AI",
        "assign": "Which agent is the best fit",
        "evaluate": "evaluating the output of a task",
        "review": "final output of the task force execution",
        "dynamic": "Recommend the best execution mode",
    }

    def __init__(self, **replies):
        self.replies: Dict[str, List[str]] = {
            kind: list(value) if isinstance(value, list) else [value] for kind, value in replies.items()
        }
        self.seen: List[str] = []
        self.prompts: List[str] = []

    def __call__(self, messages, context) -> str:
        prompt = messages[-1].content
        for kind, marker in self.MARKERS.items():
            if marker in prompt:
                break
        else:
            raise AssertionError(f"Unexpected manager prompt: {prompt[:120]}")
        self.seen.append(kind)
        self.prompts.append(prompt)
        queue = self.replies.get(kind)
        if not queue:
            raise AssertionError(f"No scripted reply for '{kind}'")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def count(self, kind: str) -> int:
        return self.seen.count(kind)


@pytest.fixture
def make_agent() -> Callable[..., Agent]:
    def factory(name: str, replies="ok", **kwargs) -> Agent:
        return Agent(
            name=name,
            role=kwargs.pop("role", f"{name} specialist"),
            goal=kwargs.pop("goal", f"Help as {name}"),
            backstory=kwargs.pop("backstory", f"{name} has done this before."),
            llm_provider=provider_for(replies),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_manager():
    def factory(**replies):
        script = ManagerScript(**replies)
        return ManagerAgent(CallableProvider(script)), script

    return factory
