"""Projections of pages and chunks into flat relational records."""
from __future__ import annotations

import re
from typing import Iterable, List, Mapping, Optional

from .models import (
    Chunk,
    ChunkRecord,
    PageRecord,
    ParsedDocument,
    SearchIndexEntry,
)

_TITLE_RE = re.compile(r"^#{1,6}[ \t]+(.+)$", re.MULTILINE)
TITLE_MAX_CHARS = 100

# Flat column name -> header label produced by the chunker.
CHUNK_HEADER_COLUMNS = {
    "main_section": "main_section",
    "subsection": "subsection",
    "detail_section": "detail",
}


def extract_page_title(content: Optional[str], index: int) -> str:
    """Return the first markdown header, else the first non-empty line, else ``Page N``."""

    if content:
        match = _TITLE_RE.search(content)
        if match and match.group(1).strip():
            return match.group(1).strip()
        for line in content.split("\n"):
            stripped = line.strip()
            if stripped:
                return stripped[:TITLE_MAX_CHARS]
    return f"Page {index}"


def flatten_pages(parsed: ParsedDocument) -> List[PageRecord]:
    """One record per page with content; pages without content are left out."""

    records: List[PageRecord] = []
    for page in parsed.pages:
        if not page.content:
            continue
        records.append(
            PageRecord(
                relative_path=parsed.path,
                page_id=page.page_id,
                page_number=page.index,
                page_content=page.content,
                page_title=extract_page_title(page.content, page.index),
                content_length=len(page.content),
                total_pages=parsed.metadata.page_count,
            )
        )
    return records


def _header_value(headers: object, label: str) -> Optional[str]:
    if not isinstance(headers, Mapping):
        return None
    value = headers.get(label)
    return value if isinstance(value, str) and value else None


def flatten_chunks(chunks: Iterable[Chunk]) -> List[ChunkRecord]:
    records: List[ChunkRecord] = []
    for chunk in chunks:
        if not chunk.text:
            continue
        records.append(
            ChunkRecord(
                relative_path=chunk.document_path,
                chunk_id=chunk.chunk_id,
                chunk_number=chunk.index,
                chunk_text=chunk.text,
                main_section=_header_value(chunk.headers, CHUNK_HEADER_COLUMNS["main_section"]),
                subsection=_header_value(chunk.headers, CHUNK_HEADER_COLUMNS["subsection"]),
                detail_section=_header_value(chunk.headers, CHUNK_HEADER_COLUMNS["detail_section"]),
                chunk_length=len(chunk.text),
            )
        )
    return records


def page_index_entries(records: Iterable[PageRecord]) -> List[SearchIndexEntry]:
    return [
        SearchIndexEntry(
            id=record.page_id,
            text=record.page_content,
            attributes={
                "page_id": record.page_id,
                "page_number": record.page_number,
                "page_title": record.page_title,
                "relative_path": record.relative_path,
            },
        )
        for record in records
        if record.page_content and record.page_content.strip()
    ]


def chunk_index_entries(records: Iterable[ChunkRecord]) -> List[SearchIndexEntry]:
    entries: List[SearchIndexEntry] = []
    for record in records:
        if not record.chunk_text or not record.chunk_text.strip():
            continue
        attributes: dict[str, object] = {
            "chunk_id": record.chunk_id,
            "chunk_number": record.chunk_number,
            "relative_path": record.relative_path,
        }
        for column in ("main_section", "subsection", "detail_section"):
            value = getattr(record, column)
            if value is not None:
                attributes[column] = value
        entries.append(SearchIndexEntry(id=record.chunk_id, text=record.chunk_text, attributes=attributes))
    return entries
