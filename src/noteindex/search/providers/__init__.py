"""Embedding providers — protocol and implementations."""

from noteindex.search.protocols import EmbeddingProvider, TaskType
from noteindex.search.providers.gemini import GeminiEmbedding

__all__ = [
    "EmbeddingProvider",
    "GeminiEmbedding",
    "TaskType",
]

# Optional providers — import-guarded, available only when deps are installed.
try:
    from noteindex.search.providers.openai import OpenAIEmbedding

    __all__.append("OpenAIEmbedding")
except ImportError:  # pragma: no cover
    pass

try:
    from noteindex.search.providers.sentence_transformers import SentenceTransformerEmbedding

    __all__.append("SentenceTransformerEmbedding")
except ImportError:  # pragma: no cover
    pass
