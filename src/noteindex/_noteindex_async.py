"""NoteIndexAsync — async facade wiring storage, provider, messaging, and consumer."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import create_async_engine

from noteindex.db import create_tables, make_session_factory, session_scope
from noteindex.events import DEFAULT_TOPIC, NoteChangedEvent
from noteindex.ingestion.consumer import EmbeddingConsumer
from noteindex.ingestion.pipeline import IngestionPipeline
from noteindex.messaging import InMemoryPubSub
from noteindex.repositories import NotebookRepository, NoteRepository
from noteindex.search.protocols import TaskType
from noteindex.search.store import DEFAULT_SEARCH_K, EmbeddingStore
from noteindex.search.types import NoteSearchResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from noteindex.config import Settings
    from noteindex.ingestion.pipeline import IngestionResult
    from noteindex.messaging import PubSub, RetryPolicy
    from noteindex.search.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)


class NoteIndexAsync:
    """Async facade for the note embedding index.

    Typical use inside a service::

        engine = create_async_engine("postgresql+asyncpg://...")
        index = NoteIndexAsync(engine=engine, embedding_provider=GeminiEmbedding())
        await index.open()
        await index.start()
        ...
        await index.publish_note_changed(note.id)   # after a note write
        await index.delete_notebook(notebook.id)     # cascade hook
        results = await index.search("how do I rotate keys?")
        ...
        await index.close()

    The pub/sub handle is passed in; when omitted an in-process
    :class:`InMemoryPubSub` is created and owned (closed) by the facade.
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine,
        embedding_provider: EmbeddingProvider,
        pubsub: PubSub | None = None,
        topic: str = DEFAULT_TOPIC,
        metric: str = "cosine",
        search_k: int = DEFAULT_SEARCH_K,
        check_freshness: bool = False,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if pubsub is not None and retry_policy is not None:
            raise ValueError("retry_policy configures the built-in pub/sub; pass one or the other")

        self._engine = engine
        self._owns_engine = False
        self._session_factory = make_session_factory(engine)
        self._provider = embedding_provider
        self._owns_pubsub = pubsub is None
        self._pubsub: PubSub = pubsub or InMemoryPubSub(retry_policy=retry_policy)
        self._topic = topic
        self._search_k = search_k
        self._closed = False

        self._store = EmbeddingStore(metric=metric)
        self._notes = NoteRepository()
        self._notebooks = NotebookRepository()
        self._pipeline = IngestionPipeline(
            self._session_factory,
            embedding_provider,
            store=self._store,
            note_reader=self._notes,
            notebook_reader=self._notebooks,
            check_freshness=check_freshness,
        )
        self._consumer = EmbeddingConsumer(self._pubsub, self._pipeline, topic=topic)
        self._stop: asyncio.Event | None = None
        self._consumer_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        pubsub: PubSub | None = None,
    ) -> NoteIndexAsync:
        """Build a facade from :class:`~noteindex.config.Settings`.

        An engine created here from ``settings.database_url`` is disposed
        by :meth:`close`.
        """
        index = cls(
            engine=engine or create_async_engine(settings.database_url),
            embedding_provider=(
                embedding_provider if embedding_provider is not None else settings.build_provider()
            ),
            pubsub=pubsub,
            topic=settings.topic,
            metric=settings.metric,
            search_k=settings.search_k,
            check_freshness=settings.check_freshness,
            retry_policy=None if pubsub is not None else settings.retry_policy(),
        )
        index._owns_engine = engine is None
        return index

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def store(self) -> EmbeddingStore:
        return self._store

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._pipeline

    @property
    def consumer(self) -> EmbeddingConsumer:
        return self._consumer

    @property
    def pubsub(self) -> PubSub:
        return self._pubsub

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Create the note, notebook, and embedding tables if missing."""
        await create_tables(self._engine)

    async def start(self) -> None:
        """Start the background consumer. No-op if already running."""
        if self._closed:
            raise RuntimeError("NoteIndexAsync is closed")
        if self.running:
            return
        self._stop = asyncio.Event()
        self._consumer_task = self._consumer.start(self._stop)
        # Let the consumer subscribe before callers start publishing.
        await asyncio.sleep(0)

    async def stop(self) -> None:
        """Stop the consumer; an in-flight message is rejected."""
        if self._consumer_task is None:
            return
        assert self._stop is not None
        self._stop.set()
        task, self._consumer_task = self._consumer_task, None
        try:
            await task
        except Exception:
            logger.warning("Consumer task ended with an error", exc_info=True)

    async def close(self) -> None:
        """Stop the consumer and release owned resources. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.stop()
        if self._owns_pubsub:
            await self._pubsub.close()
        close = getattr(self._provider, "close", None)
        if close is not None:
            try:
                await close()
            except Exception:
                logger.warning("Embedding provider close failed", exc_info=True)
        if self._owns_engine:
            await self._engine.dispose()

    async def __aenter__(self) -> NoteIndexAsync:
        await self.open()
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def publish_note_changed(self, note_id: str) -> None:
        """Announce that *note_id* was created or edited."""
        await self._pubsub.publish(self._topic, NoteChangedEvent(note_id).to_message())

    async def reindex(self, note_id: str) -> IngestionResult:
        """Run the pipeline for *note_id* directly, bypassing the topic."""
        return await self._pipeline.process(note_id)

    # ------------------------------------------------------------------
    # Cascade hooks
    # ------------------------------------------------------------------

    async def delete_note(self, note_id: str) -> int:
        """Retire the live embedding of a deleted note."""
        async with session_scope(self._session_factory) as session:
            return await self._store.delete_by_note(note_id, session=session)

    async def delete_notebook(self, notebook_id: str) -> int:
        """Retire the live embeddings of every note in a deleted notebook."""
        async with session_scope(self._session_factory) as session:
            return await self._store.delete_by_notebook(notebook_id, session=session)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_vector(self, vector: Sequence[float], k: int | None = None) -> list[str]:
        """Return ids of the notes closest to *vector*."""
        limit = self._search_k if k is None else k
        async with session_scope(self._session_factory) as session:
            return await self._store.search(vector, limit, session=session)

    async def search(self, query: str, k: int | None = None) -> list[NoteSearchResult]:
        """Embed *query* and return the closest live notes, closest first."""
        vector = await self._provider.embed(query, task_type=TaskType.RETRIEVAL_QUERY)
        async with session_scope(self._session_factory) as session:
            hits = await self._store.search_with_distances(
                vector, self._search_k if k is None else k, session=session
            )
            notes = await self._notes.get_many([hit.note_id for hit in hits], session=session)
        return [
            NoteSearchResult(note=notes[hit.note_id], distance=hit.distance)
            for hit in hits
            if hit.note_id in notes
        ]
