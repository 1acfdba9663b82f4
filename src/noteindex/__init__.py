"""noteindex: keeps note embeddings in step with note content.

A background consumer turns note-changed events into stored embeddings;
the embedding store answers nearest-neighbor queries over live rows.
"""

__version__ = "0.1.0"

from noteindex._noteindex_async import NoteIndexAsync
from noteindex.config import Settings
from noteindex.events import DEFAULT_TOPIC, NoteChangedEvent
from noteindex.exceptions import (
    DecodeError,
    NoteIndexError,
    NotFoundError,
    ProviderError,
    StaleNoteError,
    StorageError,
)
from noteindex.ingestion import (
    EmbeddingConsumer,
    IngestionPipeline,
    IngestionResult,
    render_document,
)
from noteindex.messaging import InMemoryPubSub, Message, MessageState, PubSub, RetryPolicy
from noteindex.models import Note, NoteEmbedding, Notebook
from noteindex.repositories import NotebookRepository, NoteRepository
from noteindex.search import (
    DEFAULT_SEARCH_K,
    EmbeddingHit,
    EmbeddingProvider,
    EmbeddingStore,
    NoteSearchResult,
    TaskType,
)

__all__ = [
    "DEFAULT_SEARCH_K",
    "DEFAULT_TOPIC",
    "DecodeError",
    "EmbeddingConsumer",
    "EmbeddingHit",
    "EmbeddingProvider",
    "EmbeddingStore",
    "InMemoryPubSub",
    "IngestionPipeline",
    "IngestionResult",
    "Message",
    "MessageState",
    "NotFoundError",
    "Note",
    "NoteChangedEvent",
    "NoteEmbedding",
    "NoteIndexAsync",
    "NoteIndexError",
    "NoteRepository",
    "NoteSearchResult",
    "Notebook",
    "NotebookRepository",
    "ProviderError",
    "PubSub",
    "RetryPolicy",
    "Settings",
    "StaleNoteError",
    "StorageError",
    "TaskType",
    "__version__",
    "render_document",
]
