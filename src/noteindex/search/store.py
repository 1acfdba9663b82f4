"""EmbeddingStore — soft-delete embedding table with nearest-neighbor search."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from noteindex.exceptions import StorageError
from noteindex.models import Note, NoteEmbedding
from noteindex.search.types import EmbeddingHit

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import Update
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_K: int = 5
"""Number of notes returned by :meth:`EmbeddingStore.search` when *k* is omitted."""

_METRICS = ("cosine", "l2")


class EmbeddingStore:
    """Sole writer of the ``note_embedding`` table.

    Stateless apart from configuration: every operation runs on the
    caller's ``AsyncSession`` so it can be composed with other writes in
    one transaction.  Nothing here commits; the caller owns the unit of
    work.

    Retirement is always a soft delete (``is_deleted`` + ``deleted_at``).
    Search ranks live rows by distance to the query vector under a metric
    fixed for the lifetime of the store (``"cosine"`` or ``"l2"``).
    """

    def __init__(
        self,
        *,
        metric: str = "cosine",
        embedding_model: type[NoteEmbedding] = NoteEmbedding,
        note_model: type[Note] = Note,
    ) -> None:
        if metric not in _METRICS:
            msg = f"Unsupported metric {metric!r}; expected one of {_METRICS}"
            raise ValueError(msg)
        self._metric = metric
        self._model = embedding_model
        self._note_model = note_model

    @property
    def metric(self) -> str:
        return self._metric

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, embedding: NoteEmbedding, *, session: AsyncSession) -> NoteEmbedding:
        """Insert a new embedding row and flush it."""
        session.add(embedding)
        try:
            await session.flush()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to insert embedding for note {embedding.note_id}: {exc}") from exc
        return embedding

    async def delete_by_note(
        self,
        note_id: str,
        now: datetime | None = None,
        *,
        session: AsyncSession,
    ) -> int:
        """Soft-delete every live embedding of *note_id*. Returns rows retired."""
        model = self._model
        stmt = (
            update(model)
            .where(
                model.note_id == note_id,  # type: ignore[arg-type]
                model.is_deleted == False,  # noqa: E712
            )
            .values(is_deleted=True, deleted_at=now or datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        retired = await self._execute_update(stmt, session, f"note {note_id}")
        logger.debug("Retired %d embedding(s) for note %s", retired, note_id)
        return retired

    async def delete_by_notebook(
        self,
        notebook_id: str,
        now: datetime | None = None,
        *,
        session: AsyncSession,
    ) -> int:
        """Soft-delete live embeddings of every note currently in *notebook_id*."""
        model = self._model
        note = self._note_model
        owned = select(note.id).where(note.notebook_id == notebook_id)
        stmt = (
            update(model)
            .where(
                model.note_id.in_(owned),  # type: ignore[attr-defined]
                model.is_deleted == False,  # noqa: E712
            )
            .values(is_deleted=True, deleted_at=now or datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        retired = await self._execute_update(stmt, session, f"notebook {notebook_id}")
        logger.debug("Retired %d embedding(s) for notebook %s", retired, notebook_id)
        return retired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query_vector: Sequence[float],
        k: int = DEFAULT_SEARCH_K,
        *,
        session: AsyncSession,
    ) -> list[str]:
        """Return up to *k* note ids of live rows, closest first."""
        hits = await self.search_with_distances(query_vector, k, session=session)
        return [hit.note_id for hit in hits]

    async def search_with_distances(
        self,
        query_vector: Sequence[float],
        k: int = DEFAULT_SEARCH_K,
        *,
        session: AsyncSession,
    ) -> list[EmbeddingHit]:
        """Like :meth:`search` but keeps the embedding id and distance."""
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            msg = f"k must be a positive integer, got {k!r}"
            raise ValueError(msg)

        model = self._model
        try:
            result = await session.execute(
                select(model.id, model.note_id, model.embedding_value)
                .where(model.is_deleted == False)  # noqa: E712
                .order_by(model.created_at, model.id)  # type: ignore[arg-type]
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Embedding search failed: {exc}") from exc
        rows = result.all()
        if not rows:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        if query.ndim != 1 or query.size == 0:
            msg = "query_vector must be a non-empty sequence of floats"
            raise ValueError(msg)
        for row in rows:
            if len(row[2]) != query.size:
                msg = (
                    f"Dimension mismatch: query has {query.size} values, "
                    f"embedding {row[0]} has {len(row[2])}"
                )
                raise ValueError(msg)

        matrix = np.asarray([row[2] for row in rows], dtype=np.float64)
        distances = self._distances(matrix, query)
        order = np.argsort(distances, kind="stable")[:k]
        return [
            EmbeddingHit(
                note_id=rows[i][1],
                embedding_id=rows[i][0],
                distance=float(distances[i]),
            )
            for i in order.tolist()
        ]

    async def list_for_note(
        self,
        note_id: str,
        *,
        include_deleted: bool = False,
        session: AsyncSession,
    ) -> list[NoteEmbedding]:
        """Return the embedding history of *note_id*, oldest first."""
        model = self._model
        conditions = [model.note_id == note_id]
        if not include_deleted:
            conditions.append(model.is_deleted == False)  # noqa: E712
        try:
            result = await session.execute(
                select(model).where(*conditions).order_by(model.created_at, model.id)  # type: ignore[arg-type]
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list embeddings for note {note_id}: {exc}") from exc
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _execute_update(self, stmt: Update, session: AsyncSession, target: str) -> int:
        try:
            result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to retire embeddings for {target}: {exc}") from exc
        return result.rowcount or 0

    def _distances(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self._metric == "l2":
            return np.linalg.norm(matrix - query, axis=1)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        # Zero vectors have no direction; rank them as orthogonal.
        similarity = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        return 1.0 - similarity
