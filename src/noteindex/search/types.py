"""Search layer data types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from noteindex.models import Note


@dataclass(frozen=True, slots=True)
class EmbeddingHit:
    """A single live embedding matched by a vector search.

    Attributes:
        note_id: Note the embedding belongs to.
        embedding_id: Id of the matched ``note_embedding`` row.
        distance: Distance to the query vector (lower is closer).
    """

    note_id: str
    embedding_id: str
    distance: float


@dataclass(frozen=True, slots=True)
class NoteSearchResult:
    """A note returned by a text search, with its distance to the query."""

    note: Note
    distance: float
