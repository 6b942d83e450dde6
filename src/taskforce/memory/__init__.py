"""Memory providers and retrieval helpers."""

from .retrieval import MemoryRetriever, Retriever, retrieve_and_enrich
from .simple import (
    InMemoryMemoryProvider,
    JsonFileMemoryProvider,
    MemoryProvider,
    MemoryRecord,
    memory_provider_for,
)

__all__ = [
    "InMemoryMemoryProvider",
    "JsonFileMemoryProvider",
    "MemoryProvider",
    "MemoryRecord",
    "MemoryRetriever",
    "Retriever",
    "memory_provider_for",
    "retrieve_and_enrich",
]
