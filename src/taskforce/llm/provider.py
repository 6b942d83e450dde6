"""Provider abstractions used by the agent runtime."""

from __future__ import annotations

import inspect
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

if TYPE_CHECKING:
    from ..tools.base import Tool
    from ..tools.executor import ToolExecutor

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class PromptContext:
    """Metadata about the prompt being generated."""

    agent_name: str
    task_id: str = ""
    iteration: int = 0
    model: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    tools: List["Tool"] = field(default_factory=list)
    tool_executor: Optional["ToolExecutor"] = None
    verbose: bool = False


class LLMProvider(Protocol):
    """Interface for language model providers."""

    async def generate(
        self, messages: Sequence[ChatMessage], context: PromptContext
    ) -> str:  # pragma: no cover - interface
        """Return a response for the given messages."""


class ProviderError(RuntimeError):
    """Raised when a provider cannot produce a response."""


class RateLimitError(ProviderError):
    """The server answered HTTP 429; the call is retried."""


class StaticResponseProvider:
    """Provider that replays a finite list of responses (useful for tests)."""

    def __init__(self, responses: Iterable[str]):
        self._responses = iter(responses)
        self.calls: List[Tuple[List[ChatMessage], PromptContext]] = []

    async def generate(self, messages: Sequence[ChatMessage], context: PromptContext) -> str:
        self.calls.append((list(messages), context))
        try:
            return next(self._responses)
        except StopIteration as exc:  # pragma: no cover - debug guard
            raise RuntimeError("StaticResponseProvider exhausted") from exc


ResponseFunction = Callable[
    [Sequence[ChatMessage], PromptContext], Union[str, Awaitable[str]]
]


class CallableProvider:
    """Wraps a plain or async function ``(messages, context) -> str``."""

    def __init__(self, func: ResponseFunction):
        self.func = func
        self.calls: List[Tuple[List[ChatMessage], PromptContext]] = []

    async def generate(self, messages: Sequence[ChatMessage], context: PromptContext) -> str:
        self.calls.append((list(messages), context))
        result = self.func(messages, context)
        if inspect.isawaitable(result):
            result = await result
        return str(result)


class _HTTPProvider:
    """Shared request handling for providers that speak JSON over HTTP."""

    def __init__(
        self,
        model: str | None,
        base_url: str,
        *,
        options: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.options = options or {}
        self.headers = headers or {}
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.transport = transport

    def _model_for(self, context: PromptContext) -> str:
        model = context.model or self.model
        if not model:
            raise ProviderError(f"{type(self).__name__} needs a model for agent '{context.agent_name}'")
        return model

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, min=self.retry_wait, max=10),
            retry=retry_if_exception_type((RateLimitError, httpx.TransportError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(f"{self.base_url}{path}", json=payload, headers=self.headers)
                if response.status_code == 429:
                    logger.warning(
                        "%s rate limited (attempt %s/%s)",
                        type(self).__name__,
                        attempt.retry_state.attempt_number,
                        self.max_attempts,
                    )
                    raise RateLimitError(f"Rate limited by {self.base_url}")
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise ProviderError(f"{type(self).__name__} request failed: {exc}") from exc
                return response.json()
        raise ProviderError("unreachable")  # pragma: no cover


class OllamaProvider(_HTTPProvider):
    """Calls a locally hosted Ollama model via its chat API."""

    def __init__(
        self,
        model: str | None = None,
        *,
        host: str = "http://localhost:11434",
        options: Dict[str, Any] | None = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            model,
            host,
            options=options,
            timeout=timeout,
            max_attempts=max_attempts,
            retry_wait=retry_wait,
            transport=transport,
        )

    async def generate(self, messages: Sequence[ChatMessage], context: PromptContext) -> str:
        payload: Dict[str, Any] = {
            "model": self._model_for(context),
            "messages": [message.as_dict() for message in messages],
            "stream": False,
            "options": {**self.options, **context.options},
        }
        data = await self._post("/api/chat", payload)
        if "error" in data:
            raise ProviderError(f"OllamaProvider error: {data['error']}")
        result = (data.get("message") or {}).get("content")
        if not isinstance(result, str):
            raise ProviderError(f"OllamaProvider returned unexpected payload: {data}")
        return result.strip()


class OpenAICompatProvider(_HTTPProvider):
    """Talks to any server implementing ``/v1/chat/completions``.

    When the prompt context carries tools, their schemas are sent along and
    any ``tool_calls`` in the answer are run through the agent's
    :class:`~taskforce.tools.executor.ToolExecutor` before a follow-up call
    produces the final text.
    """

    def __init__(
        self,
        model: str | None = None,
        *,
        base_url: str = "https://api.openai.com",
        api_key: str | None = None,
        options: Dict[str, Any] | None = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(
            model,
            base_url,
            options=options,
            headers=headers,
            timeout=timeout,
            max_attempts=max_attempts,
            retry_wait=retry_wait,
            transport=transport,
        )

    async def generate(self, messages: Sequence[ChatMessage], context: PromptContext) -> str:
        wire_messages: List[Dict[str, Any]] = [message.as_dict() for message in messages]
        payload: Dict[str, Any] = {
            "model": self._model_for(context),
            "messages": wire_messages,
            **self.options,
            **context.options,
        }
        if context.tools:
            payload["tools"] = [tool.schema() for tool in context.tools]
            payload["tool_choice"] = "auto"

        data = await self._post("/v1/chat/completions", payload)
        message = self._first_message(data)
        tool_calls = message.get("tool_calls") or []
        if not tool_calls or context.tool_executor is None:
            return message.get("content") or ""

        if context.verbose:
            names = ", ".join(call["function"]["name"] for call in tool_calls)
            logger.info("[%s] tool calls received: %s", context.agent_name, names)

        tool_messages = []
        for call in tool_calls:
            function = call.get("function") or {}
            try:
                args = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                result = f"❌ Failed to parse arguments for tool '{function.get('name')}'"
            else:
                result = await context.tool_executor.execute_tool(
                    function.get("name", ""), args, task_id=context.task_id
                )
            tool_messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": result})

        follow_up = {key: value for key, value in payload.items() if key not in ("tools", "tool_choice")}
        follow_up["messages"] = [
            *wire_messages,
            {"role": "assistant", "content": None, "tool_calls": tool_calls},
            *tool_messages,
        ]
        data = await self._post("/v1/chat/completions", follow_up)
        return self._first_message(data).get("content") or ""

    @staticmethod
    def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"Unexpected completion payload: {data}") from exc
