"""Runtime settings for the embedding worker, loaded via pydantic-settings."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from noteindex.events import DEFAULT_TOPIC
from noteindex.messaging import RetryPolicy
from noteindex.search.store import DEFAULT_SEARCH_K

if TYPE_CHECKING:
    from noteindex.search.protocols import EmbeddingProvider


class Settings(BaseSettings):
    """Everything needed to wire a :class:`~noteindex.NoteIndexAsync`.

    Each field is read from a ``NOTEINDEX_``-prefixed environment variable
    (``NOTEINDEX_SEARCH_K`` for ``search_k``) or from a ``.env`` file.
    Empty variables fall back to the default.  Keyword arguments win over
    both.

    Attributes:
        database_url: Async SQLAlchemy URL.
        topic: Topic carrying note-changed events.
        provider: ``"gemini"``, ``"openai"``, or ``"local"``.
        embedding_model: Model name passed to the provider (provider default if None).
        embedding_dimensions: Output dimensionality (model default if None).
        api_key: Provider API key (the provider's own env var if None).
        metric: Search distance metric, ``"cosine"`` or ``"l2"``.
        search_k: Default number of search results.
        check_freshness: Abort a run if the note changed mid-pipeline.
        max_attempts: Deliveries per message before dead-lettering (None = unlimited).
        retry_backoff: Seconds before the first redelivery.
        dead_letter_topic: Destination of exhausted messages.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTEINDEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    database_url: str = "sqlite+aiosqlite:///noteindex.db"
    topic: str = DEFAULT_TOPIC
    provider: Literal["gemini", "openai", "local"] = "gemini"
    embedding_model: str | None = None
    embedding_dimensions: int | None = Field(default=None, ge=1)
    api_key: str | None = None
    metric: Literal["cosine", "l2"] = "cosine"
    search_k: int = Field(default=DEFAULT_SEARCH_K, ge=1)
    check_freshness: bool = False
    max_attempts: int | None = Field(default=None, ge=1)
    retry_backoff: float = Field(default=0.0, ge=0.0)
    dead_letter_topic: str | None = None

    @field_validator("provider", "metric", mode="before")
    @classmethod
    def _lowercase(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value

    def retry_policy(self) -> RetryPolicy:
        """Return the redelivery policy described by these settings."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff=self.retry_backoff,
            dead_letter_topic=self.dead_letter_topic,
        )

    def build_provider(self) -> EmbeddingProvider:
        """Instantiate the configured embedding provider."""
        if self.provider == "openai":
            from noteindex.search.providers.openai import OpenAIEmbedding

            return OpenAIEmbedding(
                model=self.embedding_model or "text-embedding-3-small",
                dimensions=self.embedding_dimensions,
                api_key=self.api_key,
            )
        if self.provider == "local":
            from noteindex.search.providers.sentence_transformers import (
                SentenceTransformerEmbedding,
            )

            return SentenceTransformerEmbedding(self.embedding_model or "all-MiniLM-L6-v2")

        from noteindex.search.providers.gemini import GeminiEmbedding

        return GeminiEmbedding(
            model=self.embedding_model or "text-embedding-004",
            dimensions=self.embedding_dimensions,
            api_key=self.api_key,
        )
