from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from fastapi import UploadFile
from sqlalchemy.engine import Engine

from docintel.config import PipelineSettings, get_settings
from docintel.errors import NotFoundError, QueryError
from docintel.ingest.content_store import LocalContentStore
from docintel.ingest.flatten import chunk_index_entries, page_index_entries
from docintel.ingest.models import ExtractedTableRecord
from docintel.ingest.pipeline import CorpusPipeline, PipelineRunResult
from docintel.logging_config import AUDIT_LOGGER_NAME
from docintel.search import IndexRegistry, build_backend, build_embedder
from docintel.search.index import SearchIndex
from docintel.semantic import SemanticQueryEngine, SemanticViewRegistry, load_registry
from docintel.storage import CorpusStore, create_engine_from_url
from docintel.telemetry import emit_ingest_event

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)


@dataclass(slots=True)
class UploadResult:
    corpus_id: str
    saved_files: List[str]
    duration_seconds: float


@dataclass(slots=True)
class SearchRow:
    """A ranked hit projected onto the requested columns."""

    id: str
    score: float
    values: Dict[str, Any]


class CorpusService:
    """Wires the content store, pipeline, indexes and semantic views together."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        content_store: Optional[LocalContentStore] = None,
        store: Optional[CorpusStore] = None,
        registry: Optional[IndexRegistry] = None,
        pipeline: Optional[CorpusPipeline] = None,
        semantic_registry: Optional[SemanticViewRegistry] = None,
        warehouse_engine: Optional[Engine] = None,
        schema_translate_map: Optional[Mapping[Optional[str], Optional[str]]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.content_store = content_store or LocalContentStore(self.settings.content_root)
        self.store = store or CorpusStore.from_url(self.settings.database_url)
        self.registry = registry or IndexRegistry(
            embedder=build_embedder(self.settings),
            backend=build_backend(self.settings),
            wait_seconds=self.settings.index_wait_seconds,
        )
        self.pipeline = pipeline or CorpusPipeline(
            self.settings,
            content_store=self.content_store,
            store=self.store,
            registry=self.registry,
        )
        self.semantic_registry = semantic_registry or load_registry(self.settings)
        if warehouse_engine is None:
            warehouse_url = self.settings.effective_warehouse_url
            warehouse_engine = (
                self.store.engine
                if warehouse_url == self.settings.database_url
                else create_engine_from_url(warehouse_url)
            )
        self.semantic_engine = SemanticQueryEngine(
            warehouse_engine,
            registry=self.semantic_registry,
            schema_translate_map=schema_translate_map,
        )
        self._ingest_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _ingest_lock(self, corpus_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._ingest_locks.setdefault(corpus_id, threading.Lock())

    async def upload(self, corpus_id: str, files: Iterable[UploadFile]) -> UploadResult:
        start_time = time.perf_counter()
        saved_files: List[str] = []
        for upload in files:
            if upload is None:
                continue
            contents = await upload.read()
            relative_path = self.content_store.save(corpus_id, upload.filename or "upload", contents)
            saved_files.append(relative_path)
            emit_ingest_event(
                "ingest.upload",
                corpus_id=corpus_id,
                path=relative_path,
                size_bytes=len(contents),
            )
        return UploadResult(
            corpus_id=corpus_id,
            saved_files=saved_files,
            duration_seconds=time.perf_counter() - start_time,
        )

    def ingest(self, corpus_id: str, *, cancel_event: Optional[threading.Event] = None) -> PipelineRunResult:
        """Run the pipeline; runs for the same corpus are serialised."""

        with self._ingest_lock(corpus_id):
            result = self.pipeline.run(corpus_id, cancel_event=cancel_event)
        AUDIT_LOGGER.info({"event": "ingest", **result.summary()})
        return result

    def _index(self, corpus_id: str, granularity: str) -> SearchIndex:
        try:
            return self.registry.get(corpus_id, granularity)
        except NotFoundError:
            if corpus_id not in self.store.list_corpora():
                raise
        # Persisted from an earlier process: rebuild lazily from the stored tables.
        store = self.store
        if granularity == "pages":
            source = lambda: page_index_entries(store.load_pages(corpus_id))  # noqa: E731
        else:
            source = lambda: chunk_index_entries(store.load_chunks(corpus_id))  # noqa: E731
        return self.registry.get_or_create(corpus_id, granularity, source=source)

    def search(
        self,
        corpus_id: str,
        query: str,
        *,
        index: str = "pages",
        filter: Optional[Mapping[str, Any]] = None,
        limit: int = 10,
        columns: Optional[Sequence[str]] = None,
    ) -> List[SearchRow]:
        search_index = self._index(corpus_id, index)
        available = [search_index.text_field, *sorted(search_index.attributes)]
        selected = list(columns) if columns else available
        unknown = [column for column in selected if column not in available]
        if unknown:
            raise QueryError(f"Unknown columns {unknown}; expected a subset of {available}")

        result = search_index.search(query, filter=filter, limit=limit)
        rows: List[SearchRow] = []
        for hit in result.hits:
            record = {search_index.text_field: hit.text, **hit.attributes}
            rows.append(
                SearchRow(
                    id=hit.id,
                    score=hit.score,
                    values={column: record.get(column) for column in selected},
                )
            )
        return rows

    def tables(self, corpus_id: str, *, chunk_id: Optional[str] = None) -> List[ExtractedTableRecord]:
        if corpus_id not in self.store.list_corpora():
            raise NotFoundError(f"Corpus {corpus_id!r} has not been ingested")
        return self.store.load_tables(corpus_id, chunk_id=chunk_id)

    def semantic_views(self) -> List[Dict[str, object]]:
        return [self.semantic_registry.get(name).describe() for name in self.semantic_registry.names()]

    def semantic_query(
        self,
        view_name: str,
        *,
        dimensions: Sequence[str] = (),
        metrics: Sequence[str] = (),
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None,
        version: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        view = self.semantic_registry.get(view_name, version)
        return self.semantic_engine.query(
            view,
            dimensions=dimensions,
            metrics=metrics,
            filter=filter,
            order_by=order_by,
            limit=limit,
        )


@lru_cache()
def get_corpus_service() -> CorpusService:
    """FastAPI dependency returning the shared :class:`CorpusService` instance."""

    return CorpusService()


def reset_corpus_service_cache() -> None:
    get_corpus_service.cache_clear()  # type: ignore[attr-defined]


__all__ = [
    "CorpusService",
    "SearchRow",
    "UploadResult",
    "get_corpus_service",
    "reset_corpus_service_cache",
]
