"""Search indexes over flattened pages and chunks."""
from __future__ import annotations

from docintel.config import PipelineSettings

from .backends import InMemoryVectorBackend, VectorBackend
from .embeddings import Embedder, HashingEmbedder, SentenceTransformerEmbedder, build_embedder
from .filters import matches, parse_filter, to_chroma_where
from .index import (
    CHUNK_ATTRIBUTES,
    PAGE_ATTRIBUTES,
    IndexRegistry,
    IndexState,
    SearchHit,
    SearchIndex,
    SearchResult,
)


def build_backend(settings: PipelineSettings) -> VectorBackend:
    """Return the vector back-end selected by ``VECTOR_STORE``."""

    backend = settings.vector_store
    if backend == "memory":
        return InMemoryVectorBackend()
    if backend == "chroma":
        from .chroma_store import ChromaVectorBackend

        return ChromaVectorBackend(settings.chroma_persist_dir)
    raise ValueError(f"Unsupported VECTOR_STORE backend: {backend!r}")


__all__ = [
    "CHUNK_ATTRIBUTES",
    "Embedder",
    "HashingEmbedder",
    "InMemoryVectorBackend",
    "IndexRegistry",
    "IndexState",
    "PAGE_ATTRIBUTES",
    "SearchHit",
    "SearchIndex",
    "SearchResult",
    "SentenceTransformerEmbedder",
    "VectorBackend",
    "build_backend",
    "build_embedder",
    "matches",
    "parse_filter",
    "to_chroma_where",
]
