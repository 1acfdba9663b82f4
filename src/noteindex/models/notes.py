"""Note and Notebook models.

These tables are owned by the note/notebook CRUD layer.  The embedding
pipeline only reads them, and the notebook cascade joins against
``note.notebook_id``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class Notebook(SQLModel, table=True):
    """A folder of notes."""

    __tablename__ = "notebook"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field(default="")
    parent_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    deleted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    is_deleted: bool = Field(default=False)


class Note(SQLModel, table=True):
    """A single note inside a notebook."""

    __tablename__ = "note"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    title: str = Field(default="")
    content: str = Field(default="")
    notebook_id: str = Field(foreign_key="notebook.id", index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    deleted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    is_deleted: bool = Field(default=False)
