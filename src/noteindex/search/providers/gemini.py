"""GeminiEmbedding — async embedding provider backed by the Gemini ``embedContent`` API."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from noteindex.exceptions import ProviderError
from noteindex.search.protocols import TaskType

logger = logging.getLogger(__name__)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Default dimensions per model when the user does not specify.
_MODEL_DEFAULTS: dict[str, int] = {
    "text-embedding-004": 768,
    "embedding-001": 768,
    "gemini-embedding-001": 3072,
}


class GeminiEmbedding:
    """Async embedding provider backed by the Gemini Embeddings API.

    Sends one document per request with a task-type hint so the model can
    distinguish documents being indexed from queries.  Every failure mode
    (transport error, non-2xx status, malformed or empty body) is raised as
    :class:`ProviderError`.

    The API key is read from ``GOOGLE_GEMINI_API_KEY`` when not passed.
    """

    def __init__(
        self,
        *,
        model: str = "text-embedding-004",
        dimensions: int | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
        base_url: str = _BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        resolved_key = api_key or os.environ.get("GOOGLE_GEMINI_API_KEY")
        if not resolved_key:
            msg = (
                "No Gemini API key provided. Pass api_key= or set the "
                "GOOGLE_GEMINI_API_KEY environment variable."
            )
            raise ValueError(msg)

        self._model = model.removeprefix("models/")
        self._dimensions = dimensions
        self._api_key = resolved_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    # ------------------------------------------------------------------
    # EmbeddingProvider protocol
    # ------------------------------------------------------------------

    async def embed(
        self,
        text: str,
        *,
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> list[float]:
        """Embed a single text string via the ``embedContent`` endpoint."""
        body: dict[str, Any] = {
            "model": f"models/{self._model}",
            "content": {"parts": [{"text": text}]},
            "taskType": task_type.value,
        }
        if self._dimensions is not None:
            body["outputDimensionality"] = self._dimensions

        url = f"{self._base_url}/models/{self._model}:embedContent"
        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini request failed: {exc}") from exc

        if not response.is_success:
            raise ProviderError(
                f"Gemini returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return self._parse(response)

    @property
    def dimensions(self) -> int:
        """Return the embedding dimensionality."""
        if self._dimensions is not None:
            return self._dimensions
        default = _MODEL_DEFAULTS.get(self._model)
        if default is not None:
            return default
        msg = f"Unknown default dimensions for model {self._model!r}. Pass dimensions= explicitly."
        raise ValueError(msg)

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._model

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying httpx client if this provider created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _parse(self, response: httpx.Response) -> list[float]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"Gemini returned a non-JSON body: {exc}") from exc

        embedding = data.get("embedding") if isinstance(data, dict) else None
        values = embedding.get("values") if isinstance(embedding, dict) else None
        if not isinstance(values, list) or not values:
            raise ProviderError("Gemini response has no embedding values")
        try:
            return [float(v) for v in values]
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"Gemini returned non-numeric embedding values: {exc}") from exc
