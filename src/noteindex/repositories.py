"""Read-only note and notebook accessors used by the ingestion pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from noteindex.exceptions import NotFoundError, StorageError
from noteindex.models import Note, Notebook

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@runtime_checkable
class NoteReader(Protocol):
    """Looks up the current state of a note."""

    async def get_by_id(self, note_id: str, *, session: AsyncSession) -> Note:
        """Return the live note or raise :class:`NotFoundError`."""
        ...


@runtime_checkable
class NotebookReader(Protocol):
    """Looks up the current state of a notebook."""

    async def get_by_id(self, notebook_id: str, *, session: AsyncSession) -> Notebook:
        """Return the live notebook or raise :class:`NotFoundError`."""
        ...


class NoteRepository:
    """SQL-backed :class:`NoteReader` over the ``note`` table."""

    def __init__(self, note_model: type[Note] = Note) -> None:
        self._model = note_model

    async def get_by_id(self, note_id: str, *, session: AsyncSession) -> Note:
        model = self._model
        try:
            result = await session.execute(
                select(model).where(
                    model.id == note_id,
                    model.is_deleted == False,  # noqa: E712
                )
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load note {note_id}: {exc}") from exc
        note = result.scalar_one_or_none()
        if note is None:
            raise NotFoundError(f"Note not found: {note_id}")
        return note

    async def get_many(self, note_ids: list[str], *, session: AsyncSession) -> dict[str, Note]:
        """Return live notes keyed by id; missing ids are simply absent."""
        if not note_ids:
            return {}
        model = self._model
        try:
            result = await session.execute(
                select(model).where(
                    model.id.in_(note_ids),  # type: ignore[attr-defined]
                    model.is_deleted == False,  # noqa: E712
                )
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load notes: {exc}") from exc
        return {note.id: note for note in result.scalars().all()}


class NotebookRepository:
    """SQL-backed :class:`NotebookReader` over the ``notebook`` table."""

    def __init__(self, notebook_model: type[Notebook] = Notebook) -> None:
        self._model = notebook_model

    async def get_by_id(self, notebook_id: str, *, session: AsyncSession) -> Notebook:
        model = self._model
        try:
            result = await session.execute(
                select(model).where(
                    model.id == notebook_id,
                    model.is_deleted == False,  # noqa: E712
                )
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load notebook {notebook_id}: {exc}") from exc
        notebook = result.scalar_one_or_none()
        if notebook is None:
            raise NotFoundError(f"Notebook not found: {notebook_id}")
        return notebook
