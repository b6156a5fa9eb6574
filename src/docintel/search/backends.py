"""Vector back-end contract and the in-memory implementation."""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from docintel.ingest.models import SearchIndexEntry

from .filters import FilterNode, matches

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Neighbour:
    """Identifier of a stored entry and its cosine distance to the query."""

    id: str
    distance: float


class GenerationStore(Protocol):
    """One immutable, fully built collection of vectors."""

    def query(
        self, embedding: Sequence[float], *, limit: int, where: Optional[FilterNode]
    ) -> List[Neighbour]:
        ...


class VectorBackend(Protocol):
    name: str

    def build(
        self,
        collection: str,
        entries: Sequence[SearchIndexEntry],
        embeddings: Sequence[Sequence[float]],
    ) -> GenerationStore:
        ...

    def drop(self, collection: str) -> None:
        ...


def cosine_distance(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if len(vec_a) != len(vec_b):
        raise ValueError("Vectors must be of the same dimension")
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class MemoryCollection:
    """Vectors held in process memory; never mutated after construction."""

    def __init__(
        self, entries: Sequence[SearchIndexEntry], embeddings: Sequence[Sequence[float]]
    ) -> None:
        if len(entries) != len(embeddings):
            raise ValueError("All inputs must be of the same length")
        self._items: Tuple[Tuple[SearchIndexEntry, Tuple[float, ...]], ...] = tuple(
            (entry, tuple(map(float, embedding))) for entry, embedding in zip(entries, embeddings)
        )

    def __len__(self) -> int:
        return len(self._items)

    def query(
        self, embedding: Sequence[float], *, limit: int, where: Optional[FilterNode]
    ) -> List[Neighbour]:
        if limit <= 0:
            return []
        scored = [
            (cosine_distance(embedding, vector), position, entry.id)
            for position, (entry, vector) in enumerate(self._items)
            if matches(where, entry.attributes)
        ]
        scored.sort()
        return [Neighbour(id=entry_id, distance=distance) for distance, _, entry_id in scored[:limit]]


class InMemoryVectorBackend:
    """Keeps every live collection in a dictionary keyed by name."""

    name = "memory"

    def __init__(self) -> None:
        self._collections: Dict[str, MemoryCollection] = {}
        self._lock = threading.Lock()

    def build(
        self,
        collection: str,
        entries: Sequence[SearchIndexEntry],
        embeddings: Sequence[Sequence[float]],
    ) -> MemoryCollection:
        built = MemoryCollection(entries, embeddings)
        with self._lock:
            self._collections[collection] = built
        return built

    def drop(self, collection: str) -> None:
        with self._lock:
            self._collections.pop(collection, None)

    def collection_names(self) -> List[str]:
        with self._lock:
            return sorted(self._collections)


__all__ = [
    "GenerationStore",
    "InMemoryVectorBackend",
    "MemoryCollection",
    "Neighbour",
    "VectorBackend",
    "cosine_distance",
]
