"""Static catalogue of known models and their generation defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class ModelInfo:
    """Capabilities the runtime needs to know about a model."""

    name: str
    supports_tools: bool = False
    max_context_tokens: int = 16000
    default_options: Dict[str, Any] = field(default_factory=dict)


_CATALOGUE: Dict[str, ModelInfo] = {
    info.name: info
    for info in (
        ModelInfo("gpt-4o", True, 128000, {"temperature": 0.7, "top_p": 1, "max_tokens": 4096}),
        ModelInfo("gpt-4o-mini", True, 128000, {"temperature": 0.7, "top_p": 1, "max_tokens": 2048}),
        ModelInfo("gpt-3.5-turbo", True, 16000, {"temperature": 0.7, "top_p": 1, "max_tokens": 2048}),
        ModelInfo("deepseek-chat", False, 64000, {"temperature": 0.7, "top_p": 1, "max_tokens": 2048}),
        ModelInfo("llama3", False, 8000, {"temperature": 0.7, "top_p": 1}),
        ModelInfo("llama3.1", False, 128000, {"temperature": 0.7, "top_p": 1}),
        ModelInfo("mistral", False, 32000, {"temperature": 0.7, "top_p": 0.9}),
        ModelInfo("mixtral-8x7b", False, 32000, {"temperature": 0.7, "top_p": 0.9, "max_tokens": 2048}),
        ModelInfo("gemma3:4b", False, 8000, {"temperature": 0.7}),
    )
}

DEFAULT_MODEL_INFO = ModelInfo(name="default")


def get_model_info(name: str | None) -> ModelInfo:
    """Return catalogue data for ``name`` or a conservative default."""
    if not name:
        return DEFAULT_MODEL_INFO
    info = _CATALOGUE.get(name)
    if info is None:
        return ModelInfo(name=name)
    return info


def register_model(info: ModelInfo) -> None:
    _CATALOGUE[info.name] = info


def generation_options(name: str | None, overrides: Dict[str, Any] | None = None) -> Dict[str, Any]:
    options = dict(get_model_info(name).default_options)
    options.update(overrides or {})
    return options
