"""Tests for the SQLModel tables and session helpers."""

from __future__ import annotations

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from noteindex.db import create_tables, make_session_factory, session_scope
from noteindex.exceptions import NotFoundError, StorageError
from noteindex.models import Note, NoteEmbedding, Notebook
from noteindex.repositories import (
    NotebookReader,
    NotebookRepository,
    NoteReader,
    NoteRepository,
)

# ==================================================================
# Models
# ==================================================================


class TestModels:
    def test_table_names(self):
        assert Note.__tablename__ == "note"
        assert Notebook.__tablename__ == "notebook"
        assert NoteEmbedding.__tablename__ == "note_embedding"

    def test_embedding_defaults(self):
        emb = NoteEmbedding(note_id="n1", embedding_value=[0.1])
        assert emb.id
        assert emb.is_deleted is False
        assert emb.is_live
        assert emb.deleted_at is None
        assert emb.created_at.tzinfo is not None

    def test_ids_are_unique(self):
        assert NoteEmbedding(note_id="n").id != NoteEmbedding(note_id="n").id

    def test_note_defaults(self):
        note = Note(title="t", notebook_id="nb")
        assert note.updated_at is None
        assert note.is_deleted is False

    async def test_vector_round_trips_through_json_column(self, session_factory):
        emb = NoteEmbedding(note_id="n1", embedding_value=[0.25, -1.5, 3.0])
        async with session_factory() as session:
            session.add(emb)
            await session.commit()

        async with session_factory() as session:
            loaded = await session.get(NoteEmbedding, emb.id)
        assert loaded is not None
        assert loaded.embedding_value == [0.25, -1.5, 3.0]


# ==================================================================
# db helpers
# ==================================================================


class TestCreateTables:
    async def test_creates_all_tables_idempotently(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")
        try:
            await create_tables(engine)
            await create_tables(engine)
            async with engine.connect() as conn:
                names = await conn.run_sync(lambda c: inspect(c).get_table_names())
        finally:
            await engine.dispose()
        assert {"note", "notebook", "note_embedding"} <= set(names)


class TestSessionScope:
    async def test_commits_on_success(self, session_factory):
        notebook = Notebook(name="kept")
        async with session_scope(session_factory) as session:
            session.add(notebook)

        async with session_factory() as session:
            assert await session.get(Notebook, notebook.id) is not None

    async def test_rolls_back_on_error(self, session_factory):
        notebook = Notebook(name="discarded")
        with pytest.raises(NotFoundError):
            async with session_scope(session_factory) as session:
                session.add(notebook)
                await session.flush()
                raise NotFoundError("abort")

        async with session_factory() as session:
            assert await session.get(Notebook, notebook.id) is None

    async def test_sqlalchemy_errors_become_storage_error(self, session_factory, make_notebook):
        existing = await make_notebook("dup")
        with pytest.raises(StorageError):
            async with session_scope(session_factory) as session:
                session.add(Notebook(id=existing.id, name="clash"))


# ==================================================================
# Repositories
# ==================================================================


class TestRepositories:
    def test_protocols(self):
        assert isinstance(NoteRepository(), NoteReader)
        assert isinstance(NotebookRepository(), NotebookReader)

    async def test_get_note(self, session_factory, make_notebook, make_note):
        note = await make_note(await make_notebook())
        async with session_factory() as session:
            loaded = await NoteRepository().get_by_id(note.id, session=session)
        assert loaded.title == note.title

    async def test_missing_note(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFoundError, match="Note not found"):
                await NoteRepository().get_by_id("nope", session=session)

    async def test_soft_deleted_notebook_is_missing(self, session_factory):
        notebook = Notebook(name="old", is_deleted=True)
        async with session_factory() as session:
            session.add(notebook)
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(NotFoundError, match="Notebook not found"):
                await NotebookRepository().get_by_id(notebook.id, session=session)

    async def test_get_many_skips_missing(self, session_factory, make_notebook, make_note):
        notebook = await make_notebook()
        a = await make_note(notebook, "a")
        b = await make_note(notebook, "b")
        async with session_factory() as session:
            found = await NoteRepository().get_many([a.id, "missing", b.id], session=session)
        assert set(found) == {a.id, b.id}

    async def test_get_many_empty(self, session_factory):
        async with session_factory() as session:
            assert await NoteRepository().get_many([], session=session) == {}

    def test_session_factory_keeps_objects_after_commit(self, async_engine):
        factory = make_session_factory(async_engine)
        assert factory.kw["expire_on_commit"] is False
