"""Ingestion stages: content store, parser, chunker, flattener and orchestrator."""
from __future__ import annotations

from .chunking import ChunkingConfig, MarkdownHeaderChunker, chunk_document
from .content_store import ContentStore, LocalContentStore
from .flatten import extract_page_title, flatten_chunks, flatten_pages
from .models import Chunk, Document, Page, ParsedDocument, ParseMode
from .parser import DocumentParser

__all__ = [
    "Chunk",
    "ChunkingConfig",
    "ContentStore",
    "Document",
    "DocumentParser",
    "LocalContentStore",
    "MarkdownHeaderChunker",
    "Page",
    "ParseMode",
    "ParsedDocument",
    "chunk_document",
    "extract_page_title",
    "flatten_chunks",
    "flatten_pages",
]
