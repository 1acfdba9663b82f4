"""Search layer protocols — async embedding provider interface."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable


class TaskType(Enum):
    """What an embedding will be used for.

    Providers that distinguish indexing from querying (Gemini) forward
    this hint; others ignore it.
    """

    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"
    SEMANTIC_SIMILARITY = "SEMANTIC_SIMILARITY"
    CLASSIFICATION = "CLASSIFICATION"
    CLUSTERING = "CLUSTERING"


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Async-first protocol for text-to-vector embedding.

    Implementations convert text into fixed-dimension float vectors and
    raise :class:`~noteindex.exceptions.ProviderError` on any failure.
    """

    async def embed(
        self,
        text: str,
        *,
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> list[float]:
        """Embed a single text string into a vector."""
        ...

    @property
    def dimensions(self) -> int:
        """Number of dimensions in the embedding vectors."""
        ...

    @property
    def model_name(self) -> str:
        """Name of the embedding model."""
        ...
