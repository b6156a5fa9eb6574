"""Header-aware chunking of parsed documents into overlapping windows."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from docintel.config import DEFAULT_HEADER_LEVELS

from .models import Chunk, ParsedDocument

LOGGER = logging.getLogger(__name__)

_MAX_HEADER_INDENT = 3


@dataclass(slots=True)
class ChunkingConfig:
    max_chunk_chars: int = 2000
    overlap_chars: int = 200
    header_levels: Sequence[Tuple[str, str]] = field(default_factory=lambda: DEFAULT_HEADER_LEVELS)

    def __post_init__(self) -> None:
        if self.max_chunk_chars <= 0:
            raise ValueError("max_chunk_chars must be a positive integer")
        if not 0 <= self.overlap_chars < self.max_chunk_chars:
            raise ValueError("overlap_chars must be non-negative and smaller than max_chunk_chars")
        markers = [marker for marker, _ in self.header_levels]
        labels = [label for _, label in self.header_levels]
        if any(not marker or marker != marker.strip() for marker in markers):
            raise ValueError("header markers must be non-empty and contain no surrounding whitespace")
        if len(set(markers)) != len(markers) or len(set(labels)) != len(labels):
            raise ValueError("header markers and labels must be unique")


def _iter_lines(text: str) -> Iterator[str]:
    """Yield lines with their trailing newline; only ``\\n`` separates lines."""

    start = 0
    length = len(text)
    while start < length:
        end = text.find("\n", start)
        if end == -1:
            yield text[start:]
            return
        yield text[start : end + 1]
        start = end + 1


class MarkdownHeaderChunker:
    """Split document text along header boundaries, then by size with overlap.

    Every configured header line starts a new section: the header context is
    updated (deeper levels are cleared) and no overlap is carried across the
    boundary. Sections longer than ``max_chunk_chars`` are cut into windows
    that share a verbatim ``overlap_chars`` tail/head.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()
        self._labels = [label for _, label in self.config.header_levels]
        # Longest marker first so the most specific header wins.
        self._markers = sorted(
            ((marker, position) for position, (marker, _) in enumerate(self.config.header_levels)),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    def chunk(self, parsed: ParsedDocument) -> List[Chunk]:
        chunks = list(self.iter_chunks(parsed.text, parsed.path))
        LOGGER.debug("Generated %s chunks for %s", len(chunks), parsed.path)
        return chunks

    def iter_chunks(self, text: str, document_path: str) -> Iterator[Chunk]:
        index = 0
        for headers, section in self._iter_sections(text):
            for piece, overlap in self._iter_windows(section):
                if not piece.strip():
                    continue
                yield Chunk(
                    document_path=document_path,
                    index=index,
                    text=piece,
                    headers=dict(headers),
                    overlap=overlap,
                )
                index += 1

    def match_header(self, line: str) -> Optional[Tuple[int, str]]:
        """Return ``(level, title)`` when ``line`` is a configured header line."""

        stripped = line.rstrip("\r\n")
        indent = len(stripped) - len(stripped.lstrip(" "))
        if indent > _MAX_HEADER_INDENT:
            return None
        candidate = stripped[indent:]
        for marker, position in self._markers:
            if not candidate.startswith(marker):
                continue
            rest = candidate[len(marker) :]
            if rest and not rest[0].isspace():
                continue
            title = rest.strip()
            if title:
                return position, title
        return None

    def _iter_sections(self, text: str) -> Iterator[Tuple[Dict[str, Optional[str]], str]]:
        context: List[Optional[str]] = [None] * len(self._labels)
        buffer: List[str] = []
        for line in _iter_lines(text):
            match = self.match_header(line)
            if match is not None:
                if buffer:
                    yield dict(zip(self._labels, context)), "".join(buffer)
                    buffer = []
                level, title = match
                context[level] = title
                for deeper in range(level + 1, len(context)):
                    context[deeper] = None
            buffer.append(line)
        if buffer:
            yield dict(zip(self._labels, context)), "".join(buffer)

    def _iter_windows(self, section: str) -> Iterator[Tuple[str, int]]:
        size = self.config.max_chunk_chars
        overlap = self.config.overlap_chars
        length = len(section)
        start = 0
        carried = 0
        while True:
            end = start + size
            if end >= length:
                yield section[start:], carried
                return
            end = self._find_break(section, start + max(overlap + 1, size // 2), end)
            yield section[start:end], carried
            start = end - overlap
            carried = overlap

    @staticmethod
    def _find_break(section: str, low: int, high: int) -> int:
        newline = section.rfind("\n", low, high)
        if newline != -1:
            return newline + 1
        space = max(section.rfind(" ", low, high), section.rfind("\t", low, high))
        if space != -1:
            return space + 1
        return high


def chunk_document(
    parsed: ParsedDocument,
    header_levels: Sequence[Tuple[str, str]] = DEFAULT_HEADER_LEVELS,
    max_chunk_chars: int = 2000,
    overlap_chars: int = 200,
) -> List[Chunk]:
    """Chunk ``parsed`` with the given header hierarchy and window sizes."""

    config = ChunkingConfig(
        max_chunk_chars=max_chunk_chars,
        overlap_chars=overlap_chars,
        header_levels=tuple(header_levels),
    )
    return MarkdownHeaderChunker(config).chunk(parsed)
