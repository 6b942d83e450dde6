"""Guards against delegation cycles, runaway hops and weak delegations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..tasks.base import Task
    from .base import Agent

MAX_DELEGATION_HOPS = 5


@dataclass(frozen=True)
class DelegationCheck:
    can_delegate: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class DelegationScore:
    is_weak: bool
    score: int
    reason: Optional[str] = None


def check_delegation_validity(agent: "Agent", task: "Task") -> DelegationCheck:
    chain = task.execution_context.delegation_chain
    if agent.name in chain:
        return DelegationCheck(False, f"cycle_detected: {agent.name} already in delegation chain")
    if len(chain) >= MAX_DELEGATION_HOPS:
        return DelegationCheck(False, f"max_delegation_hops_exceeded ({MAX_DELEGATION_HOPS})")
    return DelegationCheck(True)


def update_delegation_chain(task: "Task", agent: "Agent") -> None:
    task.execution_context.delegation_chain.append(agent.name)


def check_delegation_score(output: str) -> DelegationScore:
    """Score how much substance an output carries besides a delegation.

    A bare ``DELEGATE(...)`` scores 3, a short delegation without any
    reasoning scores 5, everything else scores 10.
    """
    cleaned = (output or "").strip().lower()
    if cleaned.startswith("delegate(") and len(cleaned) < 100:
        return DelegationScore(True, 3, "Output contains only delegation without elaboration.")
    if (
        "delegate(" in cleaned
        and "because" not in cleaned
        and "therefore" not in cleaned
        and len(cleaned) < 150
    ):
        return DelegationScore(True, 5, "Delegation present but lacks reasoning or explanation.")
    return DelegationScore(False, 10)
