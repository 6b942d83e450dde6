"""Agent package exports."""

from .base import Agent, AgentRegistry, DelegationMarker
from .manager import Accept, Delegate, ManagerAgent, PlanError, Retry
from .orchestrator import Orchestrator, OrchestratorSettings, RunResult

__all__ = [
    "Accept",
    "Agent",
    "AgentRegistry",
    "Delegate",
    "DelegationMarker",
    "ManagerAgent",
    "Orchestrator",
    "OrchestratorSettings",
    "PlanError",
    "Retry",
    "RunResult",
]
