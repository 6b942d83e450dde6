"""Per-agent statistics about model calls."""

from __future__ import annotations

import datetime as _dt
import json
import logging
import pathlib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def record_llm_call(
        self, agent: str, tokens: int, duration_ms: float, model: str
    ) -> None:  # pragma: no cover - interface
        ...


@dataclass
class ModelUsage:
    model: str
    total_tokens: int = 0
    duration_ms: float = 0.0


@dataclass
class CallSnapshot:
    timestamp: str
    model: str
    total_tokens: int
    duration_ms: float


@dataclass
class AgentTelemetry:
    call_count: int = 0
    total_tokens: int = 0
    total_time_ms: float = 0.0
    last_call: Optional[CallSnapshot] = None
    models: List[ModelUsage] = field(default_factory=list)

    def usage_for(self, model: str) -> ModelUsage:
        for entry in self.models:
            if entry.model == model:
                return entry
        entry = ModelUsage(model=model)
        self.models.append(entry)
        return entry

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "AgentTelemetry":
        last = data.get("last_call")
        return cls(
            call_count=int(data.get("call_count", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
            total_time_ms=float(data.get("total_time_ms", 0.0)),
            last_call=CallSnapshot(**last) if last else None,
            models=[ModelUsage(**entry) for entry in data.get("models", [])],
        )


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token."""
    return round(len(text) / 4)


class TelemetryRecorder:
    """In-memory collector implementing :class:`TelemetrySink`."""

    def __init__(self) -> None:
        self._agents: Dict[str, AgentTelemetry] = {}

    def record_llm_call(self, agent: str, tokens: int, duration_ms: float, model: str) -> None:
        current = self._agents.setdefault(agent, AgentTelemetry())
        usage = current.usage_for(model)
        usage.total_tokens += tokens
        usage.duration_ms += duration_ms
        current.call_count += 1
        current.total_tokens += tokens
        current.total_time_ms += duration_ms
        current.last_call = CallSnapshot(
            timestamp=_dt.datetime.now(_dt.timezone.utc).isoformat(),
            model=model,
            total_tokens=tokens,
            duration_ms=duration_ms,
        )

    def export(self) -> Dict[str, Dict[str, Any]]:
        return {agent: asdict(stats) for agent, stats in self._agents.items()}

    def reset(self) -> None:
        self._agents.clear()

    def save(self, path: str | pathlib.Path, mode: str = "append") -> pathlib.Path:
        """Write the collected stats to ``path``.

        ``append`` merges with the counts already in the file, ``overwrite``
        replaces them.
        """
        if mode not in ("append", "overwrite"):
            raise ValueError(f"Unknown telemetry mode '{mode}'")
        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        existing: Dict[str, AgentTelemetry] = {}
        if mode == "append" and path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                existing = {agent: AgentTelemetry.from_mapping(data) for agent, data in raw.items()}
            except (OSError, ValueError, TypeError) as exc:
                logger.warning("Failed to read existing telemetry at %s, overwriting: %s", path, exc)
                existing = {}

        for agent, current in self._agents.items():
            previous = existing.get(agent)
            if previous is None or mode == "overwrite":
                existing[agent] = current
                continue
            previous.call_count += current.call_count
            previous.total_tokens += current.total_tokens
            previous.total_time_ms += current.total_time_ms
            previous.last_call = current.last_call
            for entry in current.models:
                merged = previous.usage_for(entry.model)
                merged.total_tokens += entry.total_tokens
                merged.duration_ms += entry.duration_ms

        payload = {agent: asdict(stats) for agent, stats in existing.items()}
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path
