"""SQLModel database models for noteindex."""

from noteindex.models.embeddings import NoteEmbedding
from noteindex.models.notes import Note, Notebook

__all__ = [
    "Note",
    "NoteEmbedding",
    "Notebook",
]
