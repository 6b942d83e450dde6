"""Retrieval helpers that turn stored memory into prompt context."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Sequence, Union

from .simple import MemoryProvider, MemoryRecord

logger = logging.getLogger(__name__)

SUMMARY_THRESHOLD = 1000

Summarizer = Callable[[str], Awaitable[str]]
Retrieved = Union[str, MemoryRecord]


class Retriever(Protocol):
    """Anything that can return documents related to a query."""

    def retrieve(
        self, query: str, **options: Any
    ) -> Union[Sequence[Retrieved], Awaitable[Sequence[Retrieved]]]:  # pragma: no cover - interface
        ...


class MemoryRetriever:
    """Exposes a memory provider through the retriever interface."""

    def __init__(self, provider: MemoryProvider, limit: int = 3) -> None:
        self.provider = provider
        self.limit = limit

    async def retrieve(self, query: str, **options: Any) -> List[MemoryRecord]:
        return await self.provider.load_relevant_memory(
            query, options.get("limit", self.limit), options.get("filter")
        )


def _as_records(raw: Sequence[Any]) -> List[MemoryRecord]:
    records: List[MemoryRecord] = []
    for item in raw or []:
        if isinstance(item, MemoryRecord):
            records.append(item)
        elif isinstance(item, str):
            records.append(MemoryRecord(task_id="retriever", input="", output=item, summary=item))
    return records


async def retrieve_and_enrich(
    query: str,
    *,
    retriever: Optional[Retriever] = None,
    memory_provider: Optional[MemoryProvider] = None,
    summarize: Optional[Summarizer] = None,
    filter: Optional[Mapping[str, str]] = None,
    limit: int = 3,
) -> str:
    """Collect relevant memory for ``query`` as a single block of text.

    The retriever wins over the memory provider. Text at or above
    ``SUMMARY_THRESHOLD`` characters is condensed with ``summarize`` when
    one is given.
    """
    if retriever is not None:
        raw = retriever.retrieve(query)
        if inspect.isawaitable(raw):
            raw = await raw
        records = _as_records(raw)
    elif memory_provider is not None:
        records = await memory_provider.load_relevant_memory(query, limit, filter)
    else:
        return ""

    texts = [record.text() for record in records if record.text()]
    if not texts:
        return ""
    full_text = "\n\n".join(texts)
    if len(full_text) < SUMMARY_THRESHOLD or summarize is None:
        logger.debug("Injecting full memory text (%s chars)", len(full_text))
        return full_text
    logger.debug("Summarizing memory text due to length (%s chars)", len(full_text))
    return await summarize(full_text)
