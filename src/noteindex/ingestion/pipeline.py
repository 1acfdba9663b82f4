"""IngestionPipeline — refresh one note's embedding.

The pipeline loads the note and its notebook, renders a canonical
document, embeds it, and swaps the stored embedding inside a single
transaction (retire the live row, insert the new one).  Nothing is
committed unless every step succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from noteindex.db import session_scope
from noteindex.exceptions import NoteIndexError, ProviderError, StaleNoteError
from noteindex.models import NoteEmbedding
from noteindex.repositories import NotebookRepository, NoteRepository
from noteindex.search.protocols import TaskType
from noteindex.search.store import EmbeddingStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from noteindex.db import SessionFactory
    from noteindex.models import Note, Notebook
    from noteindex.repositories import NotebookReader, NoteReader
    from noteindex.search.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)

NEVER_UPDATED = "-"
"""Placeholder rendered for a note that has never been edited."""

_DOCUMENT_TEMPLATE = (
    "Note Title: {title}\n"
    "Notebook Title: {notebook}\n"
    "\n"
    "{content}\n"
    "\n"
    "Created At: {created_at}\n"
    "Updated At: {updated_at}"
)


def _timestamp(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


def render_document(note: Note, notebook: Notebook) -> str:
    """Render the text embedded for *note*.

    Deterministic: identical inputs always produce identical output.
    """
    return _DOCUMENT_TEMPLATE.format(
        title=note.title,
        notebook=notebook.name,
        content=note.content,
        created_at=_timestamp(note.created_at),
        updated_at=_timestamp(note.updated_at) if note.updated_at else NEVER_UPDATED,
    )


@dataclass
class IngestionResult:
    """Result of processing one note change."""

    success: bool
    message: str
    note_id: str
    embedding_id: str | None = None
    retired: int = 0
    error: NoteIndexError | None = None


class IngestionPipeline:
    """Runs the load → render → embed → swap sequence for a single note.

    Stateless apart from its collaborators; safe to share between
    consumers.  Typed failures (:class:`NoteIndexError`) are reported as a
    failed :class:`IngestionResult`; anything else propagates.

    With *check_freshness* the note's ``updated_at`` is re-read inside the
    write transaction, and the run fails with :class:`StaleNoteError` if
    the note changed while it was being embedded.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        embedding_provider: EmbeddingProvider,
        *,
        store: EmbeddingStore | None = None,
        note_reader: NoteReader | None = None,
        notebook_reader: NotebookReader | None = None,
        check_freshness: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._provider = embedding_provider
        self._store = store or EmbeddingStore()
        self._notes = note_reader or NoteRepository()
        self._notebooks = notebook_reader or NotebookRepository()
        self._check_freshness = check_freshness

    @property
    def store(self) -> EmbeddingStore:
        return self._store

    async def process(self, note_id: str) -> IngestionResult:
        """Refresh the embedding of *note_id*."""
        try:
            embedding, retired = await self._run(note_id)
        except NoteIndexError as exc:
            logger.debug("Ingestion failed for note %s: %s", note_id, exc)
            return IngestionResult(
                success=False,
                message=f"{type(exc).__name__}: {exc}",
                note_id=note_id,
                error=exc,
            )
        return IngestionResult(
            success=True,
            message=f"Embedded note {note_id}",
            note_id=note_id,
            embedding_id=embedding.id,
            retired=retired,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run(self, note_id: str) -> tuple[NoteEmbedding, int]:
        # Reads use their own short session; no transaction is held open
        # across the provider call.
        async with session_scope(self._session_factory) as session:
            note = await self._notes.get_by_id(note_id, session=session)
            notebook = await self._notebooks.get_by_id(note.notebook_id, session=session)
        seen_updated_at = note.updated_at

        document = render_document(note, notebook)
        vector = await self._embed(document)

        embedding = NoteEmbedding(
            note_id=note.id,
            document=document,
            embedding_value=vector,
        )
        async with session_scope(self._session_factory) as session:
            if self._check_freshness:
                await self._ensure_fresh(note.id, seen_updated_at, session)
            retired = await self._store.delete_by_note(note.id, session=session)
            await self._store.create(embedding, session=session)

        logger.info(
            "Stored embedding %s for note %s (retired %d)", embedding.id, note.id, retired
        )
        return embedding, retired

    async def _embed(self, document: str) -> list[float]:
        vector = await self._provider.embed(document, task_type=TaskType.RETRIEVAL_DOCUMENT)
        if not vector:
            raise ProviderError("Embedding provider returned an empty vector")
        try:
            expected = self._provider.dimensions
        except (RuntimeError, ValueError):
            # Provider cannot report a dimension; nothing to check against.
            return list(vector)
        if len(vector) != expected:
            msg = f"Embedding has {len(vector)} dimensions, provider declares {expected}"
            raise ProviderError(msg)
        return list(vector)

    async def _ensure_fresh(
        self, note_id: str, seen: datetime | None, session: AsyncSession
    ) -> None:
        current = await self._notes.get_by_id(note_id, session=session)
        if current.updated_at != seen:
            msg = f"Note {note_id} changed while its embedding was computed"
            raise StaleNoteError(msg)
