"""Chroma vector back-end: one collection per index generation."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import chromadb

from docintel.errors import IndexBuildError
from docintel.ingest.models import SearchIndexEntry

from .backends import Neighbour
from .filters import FilterNode, to_chroma_where

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from chromadb.api import ClientAPI
    from chromadb.api.models.Collection import Collection

LOGGER = logging.getLogger(__name__)

DEFAULT_DISTANCE_METRIC = "cosine"
_BATCH_SIZE = 1000


def _chroma_metadata(attributes: Dict[str, object]) -> Dict[str, Any]:
    """Chroma accepts scalar metadata only and rejects ``None`` values."""

    return {
        key: value
        for key, value in attributes.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaCollection:
    def __init__(self, collection: "Collection") -> None:
        self._collection = collection

    def query(
        self, embedding: Sequence[float], *, limit: int, where: Optional[FilterNode]
    ) -> List[Neighbour]:
        if limit <= 0:
            return []
        try:
            available = self._collection.count()
            if available == 0:
                return []
            result = self._collection.query(
                query_embeddings=[list(map(float, embedding))],
                n_results=min(limit, available),
                where=to_chroma_where(where),
                include=["distances"],
            )
        except Exception as exc:
            raise IndexBuildError("Chroma query failed", cause=exc) from exc

        ids = (result.get("ids") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        return [
            Neighbour(id=str(item_id), distance=float(distance) if distance is not None else 1.0)
            for item_id, distance in zip(ids, distances)
        ]


class ChromaVectorBackend:
    """Adapter around a Chroma client.

    Each build writes a brand-new collection; readers holding the previous
    collection are unaffected until it is dropped.
    """

    name = "chroma"

    def __init__(
        self,
        persist_dir: str | Path,
        *,
        client: Optional["ClientAPI"] = None,
        distance_metric: str = DEFAULT_DISTANCE_METRIC,
    ) -> None:
        self.persist_dir = Path(persist_dir)
        self.distance_metric = distance_metric
        try:
            if client is not None:
                self._client = client
            else:
                self.persist_dir.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.persist_dir))
        except Exception as exc:  # pragma: no cover - depends on chromadb runtime
            raise IndexBuildError("Failed to initialise Chroma persistent client", cause=exc) from exc

    def build(
        self,
        collection: str,
        entries: Sequence[SearchIndexEntry],
        embeddings: Sequence[Sequence[float]],
    ) -> ChromaCollection:
        if len(entries) != len(embeddings):
            raise ValueError("All inputs must be of the same length")
        try:
            self.drop(collection)
            created = self._client.create_collection(
                name=collection, metadata={"hnsw:space": self.distance_metric}
            )
            for start in range(0, len(entries), _BATCH_SIZE):
                batch = entries[start : start + _BATCH_SIZE]
                created.add(
                    ids=[entry.id for entry in batch],
                    embeddings=[list(map(float, vector)) for vector in embeddings[start : start + _BATCH_SIZE]],
                    documents=[entry.text for entry in batch],
                    metadatas=[_chroma_metadata(entry.attributes) or {"id": entry.id} for entry in batch],
                )
        except IndexBuildError:
            raise
        except Exception as exc:
            raise IndexBuildError(f"Failed to build Chroma collection {collection!r}", cause=exc) from exc
        return ChromaCollection(created)

    def drop(self, collection: str) -> None:
        existing = {getattr(item, "name", item) for item in self._client.list_collections()}
        if collection in existing:
            self._client.delete_collection(name=collection)
            LOGGER.debug("Dropped Chroma collection %s", collection)


__all__ = ["ChromaCollection", "ChromaVectorBackend"]
