"""Custom exception hierarchy for the noteindex embedding pipeline."""

from __future__ import annotations


class NoteIndexError(Exception):
    """Base exception for all noteindex errors."""


class NotFoundError(NoteIndexError):
    """Raised when a referenced note or notebook does not exist (or is deleted)."""


class ProviderError(NoteIndexError):
    """Raised when the embedding provider fails or returns an unusable response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(NoteIndexError):
    """Raised on storage backend failures (DB connection, constraint, commit)."""


class DecodeError(NoteIndexError):
    """Raised when a message payload cannot be decoded into an event."""


class StaleNoteError(NoteIndexError):
    """Raised when a note changed between read and commit."""
