"""Shared fixtures for noteindex tests."""

from __future__ import annotations

import asyncio
import hashlib
import math
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from noteindex.db import make_session_factory
from noteindex.models import Note, Notebook
from noteindex.search.protocols import TaskType

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


FAKE_DIM = 8


class FakeProvider:
    """Deterministic embedding provider for testing.

    Vectors are derived from a hash of the text unless an explicit vector
    is registered in ``vectors``.  Setting ``error`` makes every call raise it.
    """

    def __init__(self, dimensions: int = FAKE_DIM) -> None:
        self._dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[tuple[str, TaskType]] = []
        self.error: BaseException | None = None

    async def embed(
        self,
        text: str,
        *,
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> list[float]:
        self.calls.append((text, task_type))
        if self.error is not None:
            raise self.error
        if text in self.vectors:
            return list(self.vectors[text])
        return self.hash_to_vector(text, self._dimensions)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "fake-test-model"

    @staticmethod
    def hash_to_vector(text: str, dimensions: int = FAKE_DIM) -> list[float]:
        h = hashlib.sha256(text.encode()).digest()
        raw = [float(b) + 1.0 for b in h[:dimensions]]
        norm = math.sqrt(sum(x * x for x in raw))
        return [x / norm for x in raw]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine with all tables created.

    A file (not ``:memory:``) gives every session its own connection, so
    transactions are isolated the way they are on a server database.
    """
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notes.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(async_engine)


@pytest.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_notebook(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Notebook]]:
    """Factory that commits a notebook and returns it."""

    async def _make(name: str = "Work") -> Notebook:
        notebook = Notebook(name=name)
        async with session_factory() as session:
            session.add(notebook)
            await session.commit()
        return notebook

    return _make


@pytest.fixture
def make_note(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Note]]:
    """Factory that commits a note into *notebook* and returns it."""

    async def _make(
        notebook: Notebook,
        title: str = "Groceries",
        content: str = "eggs, milk",
        *,
        updated_at: datetime | None = None,
    ) -> Note:
        note = Note(
            title=title,
            content=content,
            notebook_id=notebook.id,
            created_at=datetime(2024, 5, 1, 9, 30, tzinfo=UTC),
            updated_at=updated_at,
        )
        async with session_factory() as session:
            session.add(note)
            await session.commit()
        return note

    return _make


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it holds or the timeout expires."""

    async def _wait(predicate: Callable[[], Awaitable[bool]], timeout: float = 3.0) -> None:
        async with asyncio.timeout(timeout):
            while not await predicate():
                await asyncio.sleep(0.01)

    return _wait
