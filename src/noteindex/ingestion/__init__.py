"""Embedding ingestion — per-note pipeline and the topic consumer that drives it."""

from noteindex.ingestion.consumer import EmbeddingConsumer
from noteindex.ingestion.pipeline import (
    IngestionPipeline,
    IngestionResult,
    render_document,
)

__all__ = [
    "EmbeddingConsumer",
    "IngestionPipeline",
    "IngestionResult",
    "render_document",
]
