"""Persisted human feedback that enriches agent prompts."""

from __future__ import annotations

import json
import logging
import pathlib
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import ConfigError
from .tasks.base import clean_markdown_json

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_DIR = "trainings"


@dataclass
class TrainingExample:
    initial_output: str
    human_feedback: str
    improved_output: str


@dataclass
class TrainingResult:
    suggestions: List[str] = field(default_factory=list)
    quality: float = 0.0
    final_summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "TrainingResult":
        return cls(
            suggestions=[str(item) for item in data.get("suggestions", [])],
            quality=float(data.get("quality", 0.0)),
            final_summary=str(data.get("final_summary", "")),
        )


def training_path(agent_name: str, directory: str | pathlib.Path | None = None) -> pathlib.Path:
    slug = re.sub(r"\s+", "_", agent_name).lower()
    return pathlib.Path(directory or DEFAULT_TRAINING_DIR) / f"{slug}_trained.json"


def load_training(agent_name: str, directory: str | pathlib.Path | None = None) -> Optional[TrainingResult]:
    path = training_path(agent_name, directory)
    if not path.exists():
        return None
    try:
        return TrainingResult.from_mapping(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read training data {path}: {exc}") from exc


def save_training(
    agent_name: str, result: TrainingResult, directory: str | pathlib.Path | None = None
) -> pathlib.Path:
    path = training_path(agent_name, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Training data for agent '%s' saved to %s", agent_name, path)
    return path


def distillation_prompt(suggestions: List[str]) -> str:
    """Prompt asking a model to compress feedback into reusable directives."""
    feedback = "\n".join(
        "- " + re.sub(r"^Improve based on:\s*", "", item, flags=re.IGNORECASE) for item in suggestions
    )
    return (
        "You are a training compression engine. You are given multiple human feedback comments "
        "that have been used to improve an AI agent's outputs.\n\n"
        "Extract the underlying improvement instructions and compress them into a clear, concrete "
        "list of what the agent should do better next time.\n\n"
        "Respond in the following JSON format:\n"
        '{\n  "final_summary": "Do this, avoid that, include this...",\n  "quality": 0-10\n}\n\n'
        "Only include distilled guidance in final_summary. Use simple, neutral English.\n\n"
        f"Here is the feedback list:\n{feedback}"
    )


def parse_distillation(text: str) -> Tuple[str, float]:
    try:
        parsed = json.loads(clean_markdown_json(text or "{}"))
    except json.JSONDecodeError:
        logger.warning("Failed to parse training summary: %s", (text or "")[:200])
        return "Failed to parse LLM summary.", 8.0
    if not isinstance(parsed, dict):
        return "Failed to parse LLM summary.", 8.0
    summary = str(parsed.get("final_summary") or "No summary returned.")
    try:
        quality = float(parsed.get("quality") or 8)
    except (TypeError, ValueError):
        quality = 8.0
    return summary, quality
