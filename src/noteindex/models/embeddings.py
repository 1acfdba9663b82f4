"""NoteEmbedding model — one row per embedded version of a note."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class NoteEmbedding(SQLModel, table=True):
    """Stored embedding for a note.

    Several rows may exist per note, but at most one is live
    (``is_deleted`` is False).  Rows are never updated except for the
    soft-delete fields and never physically removed.
    """

    __tablename__ = "note_embedding"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    note_id: str = Field(foreign_key="note.id", index=True)
    document: str = Field(default="")
    embedding_value: list[float] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    deleted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    is_deleted: bool = Field(default=False, index=True)

    @property
    def is_live(self) -> bool:
        """True while this row is the note's current embedding."""
        return not self.is_deleted
