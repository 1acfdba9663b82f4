"""Note change events and their JSON wire format."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from noteindex.exceptions import DecodeError
from noteindex.messaging import Message

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_TOPIC = "embed-note"
"""Topic on which note mutations are announced."""

_NOTE_ID_KEYS = ("note_id", "noteId")


@dataclass(frozen=True, slots=True)
class NoteChangedEvent:
    """Immutable record that a note was created or edited.

    Attributes:
        note_id: Id of the note whose embedding must be refreshed.
    """

    note_id: str

    def to_payload(self) -> bytes:
        """Encode as ``{"note_id": ...}`` JSON bytes."""
        return json.dumps({"note_id": self.note_id}).encode()

    def to_message(self, metadata: Mapping[str, str] | None = None) -> Message:
        """Wrap the encoded event in a new :class:`Message`."""
        return Message(self.to_payload(), metadata=dict(metadata or {}))

    @classmethod
    def from_payload(cls, payload: bytes | str) -> NoteChangedEvent:
        """Decode a message payload.

        Accepts ``note_id`` or ``noteId``.  Raises :class:`DecodeError`
        when the payload is not a JSON object carrying a non-empty string id.
        """
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError(f"Payload is not valid JSON: {exc}") from exc
        except RecursionError as exc:
            raise DecodeError("Payload is nested too deeply") from exc
        except TypeError as exc:
            raise DecodeError(f"Payload must be bytes or str, got {type(payload).__name__}") from exc
        if not isinstance(data, dict):
            raise DecodeError(f"Payload must be a JSON object, got {type(data).__name__}")

        for key in _NOTE_ID_KEYS:
            note_id = data.get(key)
            if note_id is None:
                continue
            if not isinstance(note_id, str) or not note_id.strip():
                raise DecodeError(f"Payload field {key!r} must be a non-empty string")
            return cls(note_id=note_id.strip())
        raise DecodeError("Payload has no note_id")
