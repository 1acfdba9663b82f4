"""Engine and session helpers shared by the store, readers, and pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from noteindex.exceptions import StorageError
from noteindex.models import Note, NoteEmbedding, Notebook

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    SessionFactory = Callable[[], AsyncSession]


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory whose objects stay usable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create the notebook, note, and note_embedding tables if missing."""
    tables = [Notebook.__table__, Note.__table__, NoteEmbedding.__table__]  # type: ignore[attr-defined]
    try:
        async with engine.begin() as conn:
            for table in tables:
                await conn.run_sync(lambda c, t=table: t.create(c, checkfirst=True))
    except SQLAlchemyError as exc:
        raise StorageError(f"Could not create tables: {exc}") from exc


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession]:
    """Yield a session that commits on success and rolls back on any error.

    SQLAlchemy failures (including the commit itself) surface as
    :class:`StorageError`; other exceptions propagate unchanged.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError(str(exc)) from exc
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
