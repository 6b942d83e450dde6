"""Keyword based memory providers."""

from __future__ import annotations

import json
import logging
import pathlib
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..config import ConfigError
from ..enums import MemoryMode, MemoryScope

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)


@dataclass
class MemoryRecord:
    task_id: str
    input: str
    output: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    summary: Optional[str] = None

    @property
    def agent(self) -> Optional[str]:
        return self.metadata.get("agent")

    def text(self) -> str:
        return (self.summary or self.output or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MemoryRecord":
        return cls(
            task_id=str(data.get("task_id", "")),
            input=str(data.get("input", "")),
            output=str(data.get("output", "")),
            metadata=dict(data.get("metadata") or {}),
            timestamp=float(data.get("timestamp", time.time())),
            summary=data.get("summary"),
        )


class MemoryProvider(Protocol):
    """Storage used by agents to remember earlier task results."""

    scope: MemoryScope

    async def store_memory(self, record: MemoryRecord) -> None:  # pragma: no cover - interface
        ...

    async def load_relevant_memory(
        self, query: str, limit: int = 3, filter: Optional[Mapping[str, str]] = None
    ) -> List[MemoryRecord]:  # pragma: no cover - interface
        ...

    async def clear_memory(self, task_id: Optional[str] = None) -> None:  # pragma: no cover - interface
        ...


def normalize_input(text: str) -> str:
    return " ".join(text.split())


def keyword_score(query: str, text: str) -> float:
    """Fraction of the query's words that also appear in ``text``."""
    query_words = {word.lower() for word in _WORD.findall(query)}
    if not query_words:
        return 0.0
    text_words = {word.lower() for word in _WORD.findall(text)}
    return len(query_words & text_words) / len(query_words)


def _matches(record: MemoryRecord, filter: Optional[Mapping[str, str]]) -> bool:
    if not filter:
        return True
    agent = filter.get("agent")
    task_id = filter.get("task_id")
    if agent and record.agent != agent:
        return False
    if task_id and record.task_id != task_id:
        return False
    return True


class InMemoryMemoryProvider:
    """Stores a bounded list of task records for the lifetime of the process."""

    scope = MemoryScope.SHORT

    def __init__(self, max_items: int = 200) -> None:
        self.max_items = max_items
        self._items: List[MemoryRecord] = []

    async def store_memory(self, record: MemoryRecord) -> None:
        record.input = normalize_input(record.input)
        if self._is_duplicate(record):
            logger.debug("Skipping duplicate memory for task=%s agent=%s", record.task_id, record.agent)
            return
        logger.info(
            "🧠 [MemoryStore] task=%s, agent=%s, inputPreview=%s",
            record.task_id,
            record.agent,
            record.input[:50],
        )
        self._items.append(record)
        if len(self._items) > self.max_items:
            self._items = self._items[-self.max_items :]
        self._persist()

    async def load_relevant_memory(
        self, query: str, limit: int = 3, filter: Optional[Mapping[str, str]] = None
    ) -> List[MemoryRecord]:
        self._refresh()
        scored = []
        for position, record in enumerate(self._items):
            if not _matches(record, filter):
                continue
            score = keyword_score(query, f"{record.input} {record.text()}")
            if score > 0:
                scored.append((score, position, record))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[:limit]]

    async def clear_memory(self, task_id: Optional[str] = None) -> None:
        if task_id is None:
            self._items.clear()
        else:
            self._items = [record for record in self._items if record.task_id != task_id]
        self._persist()

    def dump(self) -> List[MemoryRecord]:
        return list(self._items)

    def _is_duplicate(self, record: MemoryRecord) -> bool:
        return any(
            existing.task_id == record.task_id
            and existing.agent == record.agent
            and existing.output.strip() == record.output.strip()
            for existing in self._items
        )

    def _refresh(self) -> None:
        """Hook for persistent subclasses to reload their state."""

    def _persist(self) -> None:
        """Hook for persistent subclasses to write their state."""


class JsonFileMemoryProvider(InMemoryMemoryProvider):
    """Long-term memory kept in a plain JSON file.

    The file is re-read before every lookup and store so that several
    providers pointing at the same path (shared memory mode) stay in sync.
    """

    scope = MemoryScope.LONG

    def __init__(self, path: str | pathlib.Path = "taskforce-db/memory.json", max_items: int = 1000) -> None:
        super().__init__(max_items=max_items)
        self.path = pathlib.Path(path)
        self._refresh()

    async def store_memory(self, record: MemoryRecord) -> None:
        self._refresh()
        await super().store_memory(record)

    def _refresh(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read memory file {self.path}: {exc}") from exc
        self._items = [MemoryRecord.from_mapping(entry) for entry in raw]

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [record.to_dict() for record in self._items]
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def memory_provider_for(
    scope: MemoryScope | str,
    agent_name: Optional[str] = None,
    mode: MemoryMode | str = MemoryMode.SAME,
    directory: str | pathlib.Path = "taskforce-db",
) -> Optional[MemoryProvider]:
    """Build the default provider for a memory scope.

    Short scope gets a fresh in-process store; long scope gets a JSON file,
    shared by every agent in ``same`` mode or one file per agent in
    ``separated`` mode.
    """
    scope = MemoryScope(scope)
    mode = MemoryMode(mode)
    if scope is MemoryScope.NONE:
        return None
    if scope is MemoryScope.SHORT:
        return InMemoryMemoryProvider()
    directory = pathlib.Path(directory)
    if mode is MemoryMode.SEPARATED and agent_name:
        return JsonFileMemoryProvider(directory / f"memory_{agent_name}.json")
    return JsonFileMemoryProvider(directory / "memory.json")
