"""Corpus-level ingestion: parse, chunk, flatten, enrich, persist and index."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from docintel.config import PipelineSettings
from docintel.enrich import build_table_detector, build_table_extractor
from docintel.enrich.classifier import TableDetector
from docintel.enrich.tables import TableExtractor
from docintel.errors import (
    ClassificationError,
    ExtractionError,
    ParseError,
    TransientServiceError,
)
from docintel.resilience import call_with_retry
from docintel.storage import CorpusStore
from docintel.telemetry import (
    emit_exception,
    emit_ingest_event,
    emit_skip_record,
    log_event,
    traced_duration,
)

from .chunking import ChunkingConfig, MarkdownHeaderChunker
from .content_store import ContentStore
from .flatten import chunk_index_entries, flatten_chunks, flatten_pages, page_index_entries
from .models import (
    ChunkRecord,
    Document,
    EnrichedRecord,
    ExtractedTableRecord,
    PageRecord,
    ParseMode,
)
from .parser import DocumentParser, Parser

if TYPE_CHECKING:  # pragma: no cover
    from docintel.search.index import IndexRegistry

LOGGER = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"


@dataclass(slots=True)
class DocumentOutcome:
    """Everything one document contributed to the run, or why it contributed nothing."""

    relative_path: str
    status: str = PROCESSED
    stage: Optional[str] = None
    reason: Optional[str] = None
    document: Optional[EnrichedRecord] = None
    pages: List[PageRecord] = field(default_factory=list)
    chunks: List[ChunkRecord] = field(default_factory=list)
    table_chunk_ids: List[str] = field(default_factory=list)
    tables: List[ExtractedTableRecord] = field(default_factory=list)
    skipped_chunks: int = 0


@dataclass(slots=True)
class PipelineRunResult:
    corpus_id: str
    run_id: str
    outcomes: List[DocumentOutcome] = field(default_factory=list)
    cancelled: bool = False
    persisted: bool = False

    @property
    def processed(self) -> List[DocumentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == PROCESSED]

    @property
    def skipped(self) -> List[DocumentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == SKIPPED]

    @property
    def page_count(self) -> int:
        return sum(len(outcome.pages) for outcome in self.processed)

    @property
    def chunk_count(self) -> int:
        return sum(len(outcome.chunks) for outcome in self.processed)

    @property
    def table_count(self) -> int:
        return sum(len(outcome.tables) for outcome in self.processed)

    @property
    def skipped_chunk_count(self) -> int:
        return sum(outcome.skipped_chunks for outcome in self.processed)

    def summary(self) -> Dict[str, object]:
        return {
            "corpus_id": self.corpus_id,
            "run_id": self.run_id,
            "documents_processed": len(self.processed),
            "documents_skipped": len(self.skipped),
            "pages": self.page_count,
            "chunks": self.chunk_count,
            "tables": self.table_count,
            "skipped_chunks": self.skipped_chunk_count,
            "cancelled": self.cancelled,
            "persisted": self.persisted,
        }


class CorpusPipeline:
    """Run every document of a corpus through the ingestion stages.

    Documents are processed independently on a thread pool. A failure inside
    one document's parse, classify or extract step drops that document (with
    an audit record) and the run carries on; a content store or index build
    failure aborts the run. Outputs replace the corpus tables wholesale and
    the ``pages``/``chunks`` indexes are rebuilt from them.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        content_store: ContentStore,
        store: CorpusStore,
        registry: Optional["IndexRegistry"] = None,
        parser: Optional[Parser] = None,
        chunker: Optional[MarkdownHeaderChunker] = None,
        detector: Optional[TableDetector] = None,
        extractor: Optional[TableExtractor] = None,
    ) -> None:
        self.settings = settings
        self.content_store = content_store
        self.store = store
        self.registry = registry
        self.parser = parser or DocumentParser(ocr_language=settings.ocr_language)
        self.chunker = chunker or MarkdownHeaderChunker(
            ChunkingConfig(
                max_chunk_chars=settings.chunk_chars,
                overlap_chars=settings.overlap_chars,
                header_levels=settings.header_levels,
            )
        )
        self.detector = detector or build_table_detector(settings)
        self.extractor = extractor or build_table_extractor(settings)
        self.parse_mode = ParseMode(settings.parse_mode)

    def run(self, corpus_id: str, *, cancel_event: Optional[threading.Event] = None) -> PipelineRunResult:
        cancel_event = cancel_event or threading.Event()
        result = PipelineRunResult(corpus_id=corpus_id, run_id=uuid.uuid4().hex)
        started = time.perf_counter()
        log_event(LOGGER, "ingest.run.start", run_id=result.run_id, corpus_id=corpus_id)

        outcomes: Dict[int, DocumentOutcome] = {}
        with ThreadPoolExecutor(max_workers=max(1, self.settings.max_workers)) as executor:
            futures: Dict[Future, int] = {}
            # Listing errors are corpus-level and abort the run.
            for position, document in enumerate(self.content_store.list(corpus_id)):
                if cancel_event.is_set():
                    outcomes[position] = self._cancelled(corpus_id, document.relative_path, result.run_id)
                    continue
                future = executor.submit(self._guarded, corpus_id, document, result.run_id, cancel_event)
                futures[future] = position
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()

        result.outcomes = [outcomes[position] for position in sorted(outcomes)]
        result.cancelled = cancel_event.is_set()
        if result.cancelled:
            LOGGER.warning("Ingestion of corpus %s cancelled; nothing persisted", corpus_id)
        else:
            self._persist(result)
            self._build_indexes(corpus_id)
            result.persisted = True

        log_event(
            LOGGER,
            "ingest.run.complete",
            run_id=result.run_id,
            corpus_id=corpus_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            details=result.summary(),
        )
        return result

    def _cancelled(self, corpus_id: str, path: str, run_id: str) -> DocumentOutcome:
        emit_skip_record(
            "document.skipped",
            corpus_id=corpus_id,
            path=path,
            stage="dispatch",
            reason="run cancelled",
            run_id=run_id,
        )
        return DocumentOutcome(relative_path=path, status=SKIPPED, stage="dispatch", reason="run cancelled")

    def _guarded(
        self, corpus_id: str, document: Document, run_id: str, cancel_event: threading.Event
    ) -> DocumentOutcome:
        if cancel_event.is_set():
            return self._cancelled(corpus_id, document.relative_path, run_id)
        try:
            return self.process_document(corpus_id, document, run_id=run_id)
        except Exception as exc:
            # Unexpected collaborator failures stay confined to this document.
            emit_exception(module=__name__, error=exc, corpus_id=corpus_id, run_id=run_id)
            return self._skip(corpus_id, document.relative_path, "process", repr(exc), run_id)

    def _skip(self, corpus_id: str, path: str, stage: str, reason: str, run_id: Optional[str]) -> DocumentOutcome:
        LOGGER.warning("Skipping %s at %s: %s", path, stage, reason)
        emit_skip_record(
            "document.skipped", corpus_id=corpus_id, path=path, stage=stage, reason=reason, run_id=run_id
        )
        return DocumentOutcome(relative_path=path, status=SKIPPED, stage=stage, reason=reason)

    def process_document(
        self, corpus_id: str, document: Document, *, run_id: Optional[str] = None
    ) -> DocumentOutcome:
        """Parse, chunk, flatten and enrich one document."""

        path = document.relative_path
        started = time.perf_counter()
        try:
            parsed = call_with_retry(
                lambda: self.parser.parse(document.data, path=path, mode=self.parse_mode, page_split=True),
                service="parser",
                settings=self.settings.retry,
            )
        except (ParseError, TransientServiceError) as exc:
            return self._skip(corpus_id, path, "parse", str(exc), run_id)
        if parsed.metadata.is_empty:
            return self._skip(corpus_id, path, "parse", "parser produced no text", run_id)

        chunks = self.chunker.chunk(parsed)
        outcome = DocumentOutcome(
            relative_path=path,
            document=EnrichedRecord(
                relative_path=path,
                file_url=document.url,
                parsed_pages=[page.content for page in parsed.pages],
                raw_text=parsed.text,
                page_count=parsed.metadata.page_count,
                parse_mode=parsed.metadata.mode.value,
                language=parsed.metadata.language,
            ),
            pages=flatten_pages(parsed),
            chunks=flatten_chunks(chunks),
        )

        for record in outcome.chunks:
            try:
                is_table = self.detector.is_table(record.chunk_text)
            except (ClassificationError, TransientServiceError) as exc:
                return self._skip(corpus_id, path, "classify", f"{record.chunk_id}: {exc}", run_id)
            if not is_table:
                continue
            outcome.table_chunk_ids.append(record.chunk_id)
            try:
                tables = call_with_retry(
                    lambda: self.extractor.extract_tables(record.chunk_text),
                    service="extractor",
                    settings=self.settings.retry,
                )
            except ExtractionError as exc:
                outcome.skipped_chunks += 1
                LOGGER.warning("No tables extracted from %s: %s", record.chunk_id, exc)
                emit_skip_record(
                    "chunk.skipped",
                    corpus_id=corpus_id,
                    path=path,
                    stage="extract",
                    reason=str(exc),
                    run_id=run_id,
                    chunk_id=record.chunk_id,
                )
                continue
            except TransientServiceError as exc:
                return self._skip(corpus_id, path, "extract", f"{record.chunk_id}: {exc}", run_id)
            for table_index, table in enumerate(tables):
                outcome.tables.append(
                    ExtractedTableRecord(
                        relative_path=path,
                        chunk_id=record.chunk_id,
                        chunk_number=record.chunk_number,
                        table_index=table_index,
                        table_name=table.name,
                        rows=[dict(row) for row in table.rows],
                    )
                )

        emit_ingest_event(
            "ingest.document",
            corpus_id=corpus_id,
            path=path,
            run_id=run_id,
            size_bytes=document.size,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            language=parsed.metadata.language,
            pages=len(outcome.pages),
            chunks=len(outcome.chunks),
            tables=len(outcome.tables),
        )
        return outcome

    def _persist(self, result: PipelineRunResult) -> None:
        processed = result.processed
        with traced_duration(
            "ingest.persist", logger=LOGGER, corpus_id=result.corpus_id, run_id=result.run_id
        ):
            self.store.replace_corpus(
                result.corpus_id,
                documents=[outcome.document for outcome in processed if outcome.document is not None],
                pages=[record for outcome in processed for record in outcome.pages],
                chunks=[record for outcome in processed for record in outcome.chunks],
                tables=[record for outcome in processed for record in outcome.tables],
            )

    def _build_indexes(self, corpus_id: str) -> None:
        if self.registry is None:
            return
        store = self.store
        pages = self.registry.get_or_create(
            corpus_id, "pages", source=lambda: page_index_entries(store.load_pages(corpus_id))
        )
        chunks = self.registry.get_or_create(
            corpus_id, "chunks", source=lambda: chunk_index_entries(store.load_chunks(corpus_id))
        )
        pages.build()
        chunks.build()


__all__ = ["CorpusPipeline", "DocumentOutcome", "PipelineRunResult"]
