"""Embedding search layer — store, providers, and result types."""

from noteindex.search.protocols import EmbeddingProvider, TaskType
from noteindex.search.store import DEFAULT_SEARCH_K, EmbeddingStore
from noteindex.search.types import EmbeddingHit, NoteSearchResult

__all__ = [
    "DEFAULT_SEARCH_K",
    "EmbeddingHit",
    "EmbeddingProvider",
    "EmbeddingStore",
    "NoteSearchResult",
    "TaskType",
]
