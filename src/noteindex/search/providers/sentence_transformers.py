"""SentenceTransformerEmbedding — local embedding provider (all-MiniLM-L6-v2)."""

from __future__ import annotations

import asyncio
from typing import Any

from noteindex.exceptions import ProviderError
from noteindex.search.protocols import TaskType

try:
    from sentence_transformers import SentenceTransformer

    _HAS_SENTENCE_TRANSFORMERS = True
except ImportError:  # pragma: no cover
    _HAS_SENTENCE_TRANSFORMERS = False

# Prompt names conventionally configured on retrieval models.
_PROMPT_NAMES: dict[TaskType, str] = {
    TaskType.RETRIEVAL_QUERY: "query",
    TaskType.RETRIEVAL_DOCUMENT: "document",
}


class SentenceTransformerEmbedding:
    """Embedding provider backed by ``sentence-transformers``.

    The model is loaded lazily on the first call to :meth:`embed`.  Inference
    runs in a thread pool via :func:`asyncio.to_thread`.  The task-type hint
    selects a ``query``/``document`` prompt when the model defines one.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        if not _HAS_SENTENCE_TRANSFORMERS:
            msg = (
                "sentence-transformers is required for SentenceTransformerEmbedding. "
                "Install it with: pip install noteindex[local]"
            )
            raise ImportError(msg)
        self._model_name = model_name
        self._model: SentenceTransformer | None = None

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            self._model = SentenceTransformer(self._model_name)
        return self._model

    def embed_sync(self, text: str, task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT) -> list[float]:
        """Embed a single text string (synchronous)."""
        model = self._load_model()
        kwargs: dict[str, Any] = {}
        prompt_name = _PROMPT_NAMES.get(task_type)
        if prompt_name is not None and prompt_name in (getattr(model, "prompts", None) or {}):
            kwargs["prompt_name"] = prompt_name
        result: Any = model.encode([text], **kwargs)
        return result[0].tolist()

    async def embed(
        self,
        text: str,
        *,
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> list[float]:
        """Embed a single text string in a thread pool."""
        try:
            vector = await asyncio.to_thread(self.embed_sync, text, task_type)
        except (OSError, RuntimeError, ValueError) as exc:
            raise ProviderError(f"Local embedding failed: {exc}") from exc
        if not vector:
            raise ProviderError("Local model returned an empty embedding")
        return vector

    @property
    def dimensions(self) -> int:
        """Return the embedding dimensionality."""
        model = self._load_model()
        dim = model.get_sentence_embedding_dimension()
        if dim is None:
            msg = f"Model {self._model_name!r} did not report embedding dimensions"
            raise RuntimeError(msg)
        return dim

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._model_name
