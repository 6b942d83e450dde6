"""Language model providers and model metadata."""

from .models import ModelInfo, get_model_info
from .provider import (
    CallableProvider,
    ChatMessage,
    LLMProvider,
    OllamaProvider,
    OpenAICompatProvider,
    PromptContext,
    ProviderError,
    StaticResponseProvider,
)

__all__ = [
    "CallableProvider",
    "ChatMessage",
    "LLMProvider",
    "ModelInfo",
    "OllamaProvider",
    "OpenAICompatProvider",
    "PromptContext",
    "ProviderError",
    "StaticResponseProvider",
    "get_model_info",
]
