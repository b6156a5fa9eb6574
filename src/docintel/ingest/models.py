"""Data models used by the ingestion pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional


class ParseMode(str, Enum):
    """Parser configuration: keep structural formatting or extract bare text."""

    LAYOUT = "LAYOUT"
    PLAIN = "PLAIN"


def make_page_id(document_path: str, index: int) -> str:
    return f"{document_path}_page_{index}"


def make_chunk_id(document_path: str, index: int) -> str:
    return f"{document_path}_chunk_{index}"


@dataclass(frozen=True, slots=True)
class Document:
    """Raw document bytes addressed by their path relative to the corpus root."""

    relative_path: str
    data: bytes
    url: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class Page:
    """Represents text extracted from a page in the source document."""

    document_path: str
    index: int
    content: Optional[str]

    @property
    def page_id(self) -> str:
        return make_page_id(self.document_path, self.index)

    @property
    def content_length(self) -> Optional[int]:
        return len(self.content) if self.content is not None else None


@dataclass(frozen=True, slots=True)
class ParseMetadata:
    page_count: int
    mode: ParseMode
    page_split: bool
    language: Optional[str] = None
    ocr_performed: bool = False
    is_empty: bool = False


@dataclass(frozen=True, slots=True)
class ParsedDocument:
    """Page-structured parser output, keyed by the source document path."""

    path: str
    pages: List[Page]
    text: str
    metadata: ParseMetadata


@dataclass(frozen=True, slots=True)
class Chunk:
    """Header-tagged slice of a document's text.

    ``overlap`` is the number of leading characters carried over verbatim from
    the previous chunk; it is ``0`` for the first chunk of every section.
    """

    document_path: str
    index: int
    text: str
    headers: Mapping[str, Optional[str]] = field(default_factory=dict)
    overlap: int = 0

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.document_path, self.index)


@dataclass(frozen=True, slots=True)
class ExtractedTable:
    name: str
    rows: List[Dict[str, str]]


@dataclass(frozen=True, slots=True)
class PageRecord:
    """One row of the PagesFlat table."""

    relative_path: str
    page_id: str
    page_number: int
    page_content: str
    page_title: str
    content_length: int
    total_pages: int


@dataclass(frozen=True, slots=True)
class ChunkRecord:
    """One row of the ChunksFlat table."""

    relative_path: str
    chunk_id: str
    chunk_number: int
    chunk_text: str
    main_section: Optional[str]
    subsection: Optional[str]
    detail_section: Optional[str]
    chunk_length: int


@dataclass(frozen=True, slots=True)
class SearchIndexEntry:
    """Indexed text plus the filterable attributes of a page or chunk."""

    id: str
    text: str
    attributes: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EnrichedRecord:
    """One row of the Enriched table: a document with its parsed pages."""

    relative_path: str
    file_url: str
    parsed_pages: List[Optional[str]]
    raw_text: str
    page_count: int
    parse_mode: str
    language: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ExtractedTableRecord:
    """One row of the ExtractedTables table: a named table of one chunk."""

    relative_path: str
    chunk_id: str
    chunk_number: int
    table_index: int
    table_name: str
    rows: List[Dict[str, str]]

    @property
    def row_count(self) -> int:
        return len(self.rows)
