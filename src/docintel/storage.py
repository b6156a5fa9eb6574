"""Relational persistence of the four per-corpus tables and the run registry.

Each table is keyed by ``corpus_id`` and rebuilt wholesale: a corpus run
deletes the previous rows and inserts the new ones in one transaction, so
readers observe either the previous run or the new one.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from docintel.ingest.models import ChunkRecord, EnrichedRecord, ExtractedTableRecord, PageRecord
from docintel.telemetry import log_event

LOGGER = logging.getLogger(__name__)

metadata = sa.MetaData()

enriched_documents = sa.Table(
    "enriched_documents",
    metadata,
    sa.Column("corpus_id", sa.String(128), primary_key=True),
    sa.Column("relative_path", sa.String(1024), primary_key=True),
    sa.Column("file_url", sa.Text, nullable=False),
    sa.Column("parsed_pages", sa.JSON, nullable=False),
    sa.Column("raw_text", sa.Text, nullable=False),
    sa.Column("page_count", sa.Integer, nullable=False),
    sa.Column("parse_mode", sa.String(16), nullable=False),
    sa.Column("language", sa.String(16), nullable=True),
)

chunks_flat = sa.Table(
    "chunks_flat",
    metadata,
    sa.Column("corpus_id", sa.String(128), primary_key=True),
    sa.Column("chunk_id", sa.String(1100), primary_key=True),
    sa.Column("relative_path", sa.String(1024), nullable=False),
    sa.Column("chunk_number", sa.Integer, nullable=False),
    sa.Column("chunk_text", sa.Text, nullable=False),
    sa.Column("main_section", sa.Text, nullable=True),
    sa.Column("subsection", sa.Text, nullable=True),
    sa.Column("detail_section", sa.Text, nullable=True),
    sa.Column("chunk_length", sa.Integer, nullable=False),
)

pages_flat = sa.Table(
    "pages_flat",
    metadata,
    sa.Column("corpus_id", sa.String(128), primary_key=True),
    sa.Column("page_id", sa.String(1100), primary_key=True),
    sa.Column("relative_path", sa.String(1024), nullable=False),
    sa.Column("page_number", sa.Integer, nullable=False),
    sa.Column("page_content", sa.Text, nullable=False),
    sa.Column("page_title", sa.Text, nullable=False),
    sa.Column("content_length", sa.Integer, nullable=False),
    sa.Column("total_pages", sa.Integer, nullable=False),
)

extracted_tables = sa.Table(
    "extracted_tables",
    metadata,
    sa.Column("corpus_id", sa.String(128), primary_key=True),
    sa.Column("chunk_id", sa.String(1100), primary_key=True),
    sa.Column("table_index", sa.Integer, primary_key=True),
    sa.Column("relative_path", sa.String(1024), nullable=False),
    sa.Column("chunk_number", sa.Integer, nullable=False),
    sa.Column("table_name", sa.Text, nullable=False),
    sa.Column("row_count", sa.Integer, nullable=False),
    sa.Column("rows", sa.JSON, nullable=False),
)

ingested_corpora = sa.Table(
    "ingested_corpora",
    metadata,
    sa.Column("corpus_id", sa.String(128), primary_key=True),
    sa.Column("document_count", sa.Integer, nullable=False),
    sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
)

_CORPUS_TABLES = (ingested_corpora, enriched_documents, chunks_flat, pages_flat, extracted_tables)


def create_engine_from_url(url: str) -> Engine:
    """Create an engine; in-memory SQLite is shared across threads."""

    if url in {"sqlite://", "sqlite:///:memory:"}:
        return sa.create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    return sa.create_engine(url, pool_pre_ping=True)


class CorpusStore:
    """Read/replace access to the Enriched, ChunksFlat, PagesFlat and ExtractedTables tables.

    ``ingested_corpora`` records every completed run, so a corpus whose
    documents were all skipped is still known, with empty tables.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> "CorpusStore":
        return cls(create_engine_from_url(url))

    def replace_corpus(
        self,
        corpus_id: str,
        *,
        documents: Sequence[EnrichedRecord],
        pages: Sequence[PageRecord],
        chunks: Sequence[ChunkRecord],
        tables: Sequence[ExtractedTableRecord],
    ) -> None:
        with self.engine.begin() as connection:
            for table in _CORPUS_TABLES:
                connection.execute(sa.delete(table).where(table.c.corpus_id == corpus_id))
            connection.execute(
                sa.insert(ingested_corpora).values(
                    corpus_id=corpus_id,
                    document_count=len(documents),
                    ingested_at=datetime.now(timezone.utc),
                )
            )
            if documents:
                connection.execute(
                    sa.insert(enriched_documents),
                    [
                        {
                            "corpus_id": corpus_id,
                            "relative_path": record.relative_path,
                            "file_url": record.file_url,
                            "parsed_pages": list(record.parsed_pages),
                            "raw_text": record.raw_text,
                            "page_count": record.page_count,
                            "parse_mode": record.parse_mode,
                            "language": record.language,
                        }
                        for record in documents
                    ],
                )
            if pages:
                connection.execute(
                    sa.insert(pages_flat),
                    [
                        {
                            "corpus_id": corpus_id,
                            "page_id": record.page_id,
                            "relative_path": record.relative_path,
                            "page_number": record.page_number,
                            "page_content": record.page_content,
                            "page_title": record.page_title,
                            "content_length": record.content_length,
                            "total_pages": record.total_pages,
                        }
                        for record in pages
                    ],
                )
            if chunks:
                connection.execute(
                    sa.insert(chunks_flat),
                    [
                        {
                            "corpus_id": corpus_id,
                            "chunk_id": record.chunk_id,
                            "relative_path": record.relative_path,
                            "chunk_number": record.chunk_number,
                            "chunk_text": record.chunk_text,
                            "main_section": record.main_section,
                            "subsection": record.subsection,
                            "detail_section": record.detail_section,
                            "chunk_length": record.chunk_length,
                        }
                        for record in chunks
                    ],
                )
            if tables:
                connection.execute(
                    sa.insert(extracted_tables),
                    [
                        {
                            "corpus_id": corpus_id,
                            "chunk_id": record.chunk_id,
                            "table_index": record.table_index,
                            "relative_path": record.relative_path,
                            "chunk_number": record.chunk_number,
                            "table_name": record.table_name,
                            "row_count": record.row_count,
                            "rows": record.rows,
                        }
                        for record in tables
                    ],
                )
        log_event(
            LOGGER,
            "storage.replace_corpus",
            corpus_id=corpus_id,
            details={
                "documents": len(documents),
                "pages": len(pages),
                "chunks": len(chunks),
                "tables": len(tables),
            },
        )

    def list_corpora(self) -> List[str]:
        """Corpora with a completed run, including runs that kept no documents."""

        with self.engine.connect() as connection:
            rows = connection.execute(
                sa.select(ingested_corpora.c.corpus_id).order_by(ingested_corpora.c.corpus_id)
            )
            return [row.corpus_id for row in rows]

    def load_documents(self, corpus_id: str) -> List[EnrichedRecord]:
        query = (
            sa.select(enriched_documents)
            .where(enriched_documents.c.corpus_id == corpus_id)
            .order_by(enriched_documents.c.relative_path)
        )
        with self.engine.connect() as connection:
            return [
                EnrichedRecord(
                    relative_path=row.relative_path,
                    file_url=row.file_url,
                    parsed_pages=list(row.parsed_pages),
                    raw_text=row.raw_text,
                    page_count=row.page_count,
                    parse_mode=row.parse_mode,
                    language=row.language,
                )
                for row in connection.execute(query)
            ]

    def load_pages(self, corpus_id: str) -> List[PageRecord]:
        query = (
            sa.select(pages_flat)
            .where(pages_flat.c.corpus_id == corpus_id)
            .order_by(pages_flat.c.relative_path, pages_flat.c.page_number)
        )
        with self.engine.connect() as connection:
            return [
                PageRecord(
                    relative_path=row.relative_path,
                    page_id=row.page_id,
                    page_number=row.page_number,
                    page_content=row.page_content,
                    page_title=row.page_title,
                    content_length=row.content_length,
                    total_pages=row.total_pages,
                )
                for row in connection.execute(query)
            ]

    def load_chunks(self, corpus_id: str) -> List[ChunkRecord]:
        query = (
            sa.select(chunks_flat)
            .where(chunks_flat.c.corpus_id == corpus_id)
            .order_by(chunks_flat.c.relative_path, chunks_flat.c.chunk_number)
        )
        with self.engine.connect() as connection:
            return [
                ChunkRecord(
                    relative_path=row.relative_path,
                    chunk_id=row.chunk_id,
                    chunk_number=row.chunk_number,
                    chunk_text=row.chunk_text,
                    main_section=row.main_section,
                    subsection=row.subsection,
                    detail_section=row.detail_section,
                    chunk_length=row.chunk_length,
                )
                for row in connection.execute(query)
            ]

    def load_tables(self, corpus_id: str, *, chunk_id: Optional[str] = None) -> List[ExtractedTableRecord]:
        query = sa.select(extracted_tables).where(extracted_tables.c.corpus_id == corpus_id)
        if chunk_id is not None:
            query = query.where(extracted_tables.c.chunk_id == chunk_id)
        query = query.order_by(
            extracted_tables.c.relative_path,
            extracted_tables.c.chunk_number,
            extracted_tables.c.table_index,
        )
        with self.engine.connect() as connection:
            return [
                ExtractedTableRecord(
                    relative_path=row.relative_path,
                    chunk_id=row.chunk_id,
                    chunk_number=row.chunk_number,
                    table_index=row.table_index,
                    table_name=row.table_name,
                    rows=[dict(item) for item in row.rows],
                )
                for row in connection.execute(query)
            ]


__all__ = [
    "CorpusStore",
    "chunks_flat",
    "create_engine_from_url",
    "enriched_documents",
    "extracted_tables",
    "metadata",
    "pages_flat",
]
