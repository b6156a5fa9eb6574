"""Generation-swapped search indexes over pages and chunks."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from docintel.errors import IndexBuildError, IndexRetryError, NotFoundError, QueryError
from docintel.ingest.models import SearchIndexEntry
from docintel.telemetry import emit_index_event, emit_search_event

from .backends import GenerationStore, VectorBackend
from .embeddings import Embedder
from .filters import parse_filter

LOGGER = logging.getLogger(__name__)

PAGE_ATTRIBUTES: Tuple[str, ...] = ("page_id", "page_number", "page_title", "relative_path")
CHUNK_ATTRIBUTES: Tuple[str, ...] = (
    "chunk_id",
    "chunk_number",
    "relative_path",
    "main_section",
    "subsection",
    "detail_section",
)
GRANULARITIES: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "pages": (PAGE_ATTRIBUTES, "page_content"),
    "chunks": (CHUNK_ATTRIBUTES, "chunk_text"),
}

EntrySource = Callable[[], Iterable[SearchIndexEntry]]


class IndexState(str, Enum):
    BUILDING = "BUILDING"
    READY = "READY"
    STALE = "STALE"


@dataclass(frozen=True, slots=True)
class IndexGeneration:
    """One complete, immutable build of an index."""

    number: int
    collection: str
    entries: Mapping[str, SearchIndexEntry]
    embeddings: Mapping[str, Tuple[float, ...]]
    store: GenerationStore
    built_at: float

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class SearchHit:
    id: str
    text: str
    score: float
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SearchResult:
    index: str
    generation: int
    hits: List[SearchHit]


class SearchIndex:
    """Search index whose builds never disturb in-flight readers.

    Builds and incremental updates are serialised by a writer lock and write
    a fresh generation; the reference to the current generation is swapped
    only once the new one is complete. A search captures the generation it
    starts on and is answered from it alone. While a build is in progress new
    searches wait up to ``wait_seconds`` and then fail with
    :class:`IndexRetryError`. A STALE index is rebuilt from its registered
    source before it answers. A superseded generation is dropped from the
    back-end once no search is still reading it.
    """

    def __init__(
        self,
        name: str,
        *,
        embedder: Embedder,
        backend: VectorBackend,
        attributes: Collection[str],
        text_field: str = "text",
        source: Optional[EntrySource] = None,
        wait_seconds: float = 30.0,
    ) -> None:
        self.name = name
        self.embedder = embedder
        self.backend = backend
        self.attributes = frozenset(attributes)
        self.text_field = text_field
        self.wait_seconds = wait_seconds
        self._source = source
        self._write_lock = threading.Lock()
        self._cond = threading.Condition()
        self._state = IndexState.STALE
        self._stale_requested = False
        self._current: Optional[IndexGeneration] = None
        self._readers: Dict[int, int] = {}
        self._retired: Dict[int, IndexGeneration] = {}
        self._next_number = 1

    @property
    def state(self) -> IndexState:
        with self._cond:
            return self._state

    @property
    def generation(self) -> Optional[int]:
        with self._cond:
            return self._current.number if self._current is not None else None

    def current(self) -> Optional[IndexGeneration]:
        with self._cond:
            return self._current

    def set_source(self, source: Optional[EntrySource]) -> None:
        self._source = source

    def mark_stale(self) -> None:
        """Flag the index for a rebuild before its next search."""

        with self._cond:
            if self._state is IndexState.BUILDING:
                self._stale_requested = True
            else:
                self._state = IndexState.STALE

    def build(self, entries: Optional[Iterable[SearchIndexEntry]] = None) -> IndexGeneration:
        """Full rebuild from ``entries`` or, when omitted, the registered source."""

        with self._write_lock:
            if entries is None:
                if self._source is None:
                    raise IndexBuildError(f"Index {self.name!r} has no source to rebuild from")
                entries = self._source()
            return self._build_locked(list(entries), reuse={})

    def update(
        self,
        entries: Iterable[SearchIndexEntry] = (),
        *,
        remove: Iterable[str] = (),
    ) -> IndexGeneration:
        """Upsert ``entries`` and drop ``remove`` ids into a new generation.

        Concurrent updates queue on the writer lock; unchanged entries keep
        their embeddings.
        """

        with self._write_lock:
            base = self.current()
            merged: Dict[str, SearchIndexEntry] = dict(base.entries) if base is not None else {}
            for entry_id in remove:
                merged.pop(entry_id, None)
            changed = list(entries)
            for entry in changed:
                merged[entry.id] = entry
            reuse = dict(base.embeddings) if base is not None else {}
            for entry in changed:
                reuse.pop(entry.id, None)
            return self._build_locked(list(merged.values()), reuse=reuse)

    def _build_locked(
        self,
        entries: Sequence[SearchIndexEntry],
        *,
        reuse: Mapping[str, Tuple[float, ...]],
    ) -> IndexGeneration:
        with self._cond:
            previous_state = self._state
            self._state = IndexState.BUILDING
            number = self._next_number
            self._next_number += 1
        collection = f"{self.name}__gen{number}"
        started = time.perf_counter()

        try:
            unique: Dict[str, SearchIndexEntry] = {}
            for entry in entries:
                if not entry.text or not entry.text.strip():
                    LOGGER.debug("Skipping index entry %s without text", entry.id)
                    continue
                unique[entry.id] = entry
            ordered = list(unique.values())
            pending = [entry for entry in ordered if entry.id not in reuse]
            computed = self.embedder.embed_texts([entry.text for entry in pending]) if pending else []
            if len(computed) != len(pending):
                raise IndexBuildError("Embedder returned a different number of vectors than texts")
            embeddings: Dict[str, Tuple[float, ...]] = {
                entry.id: tuple(vector) for entry, vector in zip(pending, computed)
            }
            for entry in ordered:
                if entry.id not in embeddings:
                    embeddings[entry.id] = reuse[entry.id]
            store = self.backend.build(collection, ordered, [embeddings[entry.id] for entry in ordered])
        except Exception as error:
            with self._cond:
                self._state = previous_state
                self._stale_requested = False
                self._cond.notify_all()
            emit_index_event(
                "index.build",
                index=self.name,
                generation=number,
                count=len(entries),
                backend=self.backend.name,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                error=error,
            )
            if isinstance(error, IndexBuildError):
                raise
            raise IndexBuildError(f"Failed to build index {self.name!r}", cause=error) from error

        generation = IndexGeneration(
            number=number,
            collection=collection,
            entries=MappingProxyType(unique),
            embeddings=MappingProxyType(embeddings),
            store=store,
            built_at=time.time(),
        )
        with self._cond:
            retired = self._current
            self._current = generation
            self._state = IndexState.STALE if self._stale_requested else IndexState.READY
            self._stale_requested = False
            self._cond.notify_all()
            if retired is not None and self._readers.get(retired.number):
                # Dropped by the last reader in ``_release``.
                self._retired[retired.number] = retired
                retired = None
        if retired is not None:
            self.backend.drop(retired.collection)
        emit_index_event(
            "index.build",
            index=self.name,
            generation=number,
            count=len(generation),
            backend=self.backend.name,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return generation

    def _rebuild_stale(self) -> IndexGeneration:
        with self._write_lock:
            with self._cond:
                if self._state is IndexState.READY and self._current is not None:
                    return self._current
            if self._source is None:  # pragma: no cover - checked by the caller
                raise IndexBuildError(f"Index {self.name!r} has no source to rebuild from")
            return self._build_locked(list(self._source()), reuse={})

    def _pin(self, generation: IndexGeneration) -> IndexGeneration:
        # Caller holds ``self._cond``.
        self._readers[generation.number] = self._readers.get(generation.number, 0) + 1
        return generation

    def _release(self, generation: IndexGeneration) -> None:
        with self._cond:
            remaining = self._readers.get(generation.number, 0) - 1
            if remaining > 0:
                self._readers[generation.number] = remaining
                return
            self._readers.pop(generation.number, None)
            retired = self._retired.pop(generation.number, None)
        if retired is not None:
            self.backend.drop(retired.collection)

    def _acquire_generation(self) -> IndexGeneration:
        """Return a generation pinned against retirement; pair with ``_release``."""

        deadline = time.monotonic() + max(0.0, self.wait_seconds)
        with self._cond:
            while self._state is IndexState.BUILDING:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise IndexRetryError(
                        f"Index {self.name!r} is being rebuilt; retry shortly",
                        retry_after=max(1.0, self.wait_seconds),
                    )
                self._cond.wait(remaining)
            generation = self._current
            if self._state is not IndexState.STALE or self._source is None:
                if generation is None:
                    raise IndexBuildError(f"Index {self.name!r} has not been built")
                if self._state is IndexState.STALE:
                    LOGGER.warning("Serving stale index %s without a source to rebuild from", self.name)
                return self._pin(generation)

        self._rebuild_stale()
        with self._cond:
            if self._current is None:  # pragma: no cover - a successful build sets it
                raise IndexBuildError(f"Index {self.name!r} has not been built")
            return self._pin(self._current)

    def search(
        self,
        query: str,
        *,
        filter: Optional[Mapping[str, Any]] = None,
        limit: int = 10,
    ) -> SearchResult:
        """Rank entries of one generation against ``query``.

        ``filter`` uses the JSON filter dialect over this index's attributes;
        ``score`` is the cosine similarity (higher is closer).
        """

        where = parse_filter(filter, self.attributes)
        if limit <= 0:
            raise QueryError("limit must be a positive integer")
        started = time.perf_counter()
        generation = self._acquire_generation()
        hits: List[SearchHit] = []
        try:
            if query.strip() and len(generation):
                query_embedding = self.embedder.embed_texts([query])[0]
                for neighbour in generation.store.query(query_embedding, limit=limit, where=where):
                    entry = generation.entries.get(neighbour.id)
                    if entry is None:
                        continue
                    hits.append(
                        SearchHit(
                            id=entry.id,
                            text=entry.text,
                            score=round(1.0 - neighbour.distance, 6),
                            attributes=dict(entry.attributes),
                        )
                    )
        finally:
            self._release(generation)
        emit_search_event(
            index=self.name,
            generation=generation.number,
            query=query,
            limit=limit,
            results=len(hits),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return SearchResult(index=self.name, generation=generation.number, hits=hits)


class IndexRegistry:
    """Per-corpus ``pages`` and ``chunks`` indexes sharing one embedder and back-end."""

    def __init__(self, *, embedder: Embedder, backend: VectorBackend, wait_seconds: float = 30.0) -> None:
        self.embedder = embedder
        self.backend = backend
        self.wait_seconds = wait_seconds
        self._indexes: Dict[Tuple[str, str], SearchIndex] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self, corpus_id: str, granularity: str, *, source: Optional[EntrySource] = None
    ) -> SearchIndex:
        if granularity not in GRANULARITIES:
            raise NotFoundError(f"Unknown index {granularity!r}; expected one of {sorted(GRANULARITIES)}")
        attributes, text_field = GRANULARITIES[granularity]
        with self._lock:
            index = self._indexes.get((corpus_id, granularity))
            if index is None:
                index = SearchIndex(
                    f"{corpus_id}_{granularity}",
                    embedder=self.embedder,
                    backend=self.backend,
                    attributes=attributes,
                    text_field=text_field,
                    source=source,
                    wait_seconds=self.wait_seconds,
                )
                self._indexes[(corpus_id, granularity)] = index
            elif source is not None:
                index.set_source(source)
            return index

    def get(self, corpus_id: str, granularity: str) -> SearchIndex:
        if granularity not in GRANULARITIES:
            raise NotFoundError(f"Unknown index {granularity!r}; expected one of {sorted(GRANULARITIES)}")
        with self._lock:
            index = self._indexes.get((corpus_id, granularity))
        if index is None:
            raise NotFoundError(f"No {granularity} index for corpus {corpus_id!r}")
        return index


__all__ = [
    "CHUNK_ATTRIBUTES",
    "GRANULARITIES",
    "IndexGeneration",
    "IndexRegistry",
    "IndexState",
    "PAGE_ATTRIBUTES",
    "SearchHit",
    "SearchIndex",
    "SearchResult",
]
