"""Fit chat histories into a model's context window."""

from __future__ import annotations

import logging
import math
from typing import Awaitable, Callable, List, Optional, Sequence

from ..llm.models import ModelInfo
from ..llm.provider import ChatMessage

logger = logging.getLogger(__name__)

TOKEN_BUFFER = 500
OMITTED_NOTICE = "📘 Context summary omitted due to token limits. Some older dialogue has been truncated."
SUMMARY_PROMPT = (
    "You are a memory summarizer AI. The following conversation history may be too long to fit "
    "in future prompts. Summarize the key facts, user intentions, tool calls, decisions and "
    "conclusions. Be concise and retain all context that would help the assistant continue."
)

HistorySummarizer = Callable[[List[ChatMessage]], Awaitable[str]]


def estimate_tokens(message: ChatMessage) -> int:
    return math.ceil(len(message.content or "") / 4)


async def truncate_messages(
    messages: Sequence[ChatMessage],
    model_info: ModelInfo,
    summarize: Optional[HistorySummarizer] = None,
) -> List[ChatMessage]:
    """Keep the system message and as many of the newest messages as fit.

    When more than two messages had to be dropped they are condensed with
    ``summarize``; if that summary does not fit either, a short notice
    takes its place.
    """
    budget = model_info.max_context_tokens - TOKEN_BUFFER
    system = next((message for message in messages if message.role == "system"), None)
    others = [message for message in messages if message is not system]

    total = estimate_tokens(system) if system else 0
    kept: List[ChatMessage] = []
    dropped: List[ChatMessage] = []
    for message in reversed(others):
        cost = estimate_tokens(message)
        if total + cost <= budget:
            kept.insert(0, message)
            total += cost
        else:
            dropped.insert(0, message)

    result: List[ChatMessage] = [system] if system else []
    if len(dropped) > 2:
        logger.info("Truncating %s old messages for model '%s'", len(dropped), model_info.name)
        summary_message = ChatMessage("system", OMITTED_NOTICE)
        if summarize is not None:
            content = await summarize(dropped)
            candidate = ChatMessage("system", f"📘 Context Summary (from old history):\n{content}")
            if total + estimate_tokens(candidate) <= budget:
                summary_message = candidate
        result.append(summary_message)
    result.extend(kept)
    return result
