"""Path-addressed document storage backing the ingestion pipeline."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Final, Iterator, List, Protocol

from docintel.errors import NotFoundError

from .models import Document

_FILENAME_SAFE_CHARS_RE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")
_CORPUS_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ContentStore(Protocol):
    """Read contract the pipeline needs from a document store."""

    def list(self, corpus_id: str) -> Iterator[Document]:
        ...

    def get(self, corpus_id: str, relative_path: str) -> Document:
        ...

    def get_url(self, corpus_id: str, relative_path: str) -> str:
        ...


def _sanitize_filename(filename: str) -> str:
    """Return a filesystem-safe filename preserving the extension when possible."""
    if not filename:
        filename = "upload"
    sanitized = Path(filename).name
    sanitized = _FILENAME_SAFE_CHARS_RE.sub("_", sanitized)
    sanitized = sanitized.strip("._") or "upload"
    return sanitized


class LocalContentStore:
    """Content store laid out as ``<root>/<corpus_id>/<relative_path>``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _corpus_dir(self, corpus_id: str) -> Path:
        if not _CORPUS_ID_RE.match(corpus_id or ""):
            raise NotFoundError(f"Invalid corpus id: {corpus_id!r}")
        return self.root / corpus_id

    def _resolve(self, corpus_id: str, relative_path: str) -> Path:
        corpus_dir = self._corpus_dir(corpus_id)
        candidate = (corpus_dir / relative_path).resolve()
        if corpus_dir.resolve() not in candidate.parents or not candidate.is_file():
            raise NotFoundError(f"Document {relative_path!r} not found in corpus {corpus_id!r}")
        return candidate

    def list_paths(self, corpus_id: str) -> List[str]:
        corpus_dir = self._corpus_dir(corpus_id)
        if not corpus_dir.is_dir():
            raise NotFoundError(f"Corpus {corpus_id!r} not found under {self.root}")
        paths = []
        for entry in corpus_dir.rglob("*"):
            relative = entry.relative_to(corpus_dir)
            if entry.is_file() and not any(part.startswith(".") for part in relative.parts):
                paths.append(relative.as_posix())
        return sorted(paths)

    def list(self, corpus_id: str) -> Iterator[Document]:
        """Yield every document of the corpus in path order."""

        for relative_path in self.list_paths(corpus_id):
            yield self.get(corpus_id, relative_path)

    def get(self, corpus_id: str, relative_path: str) -> Document:
        path = self._resolve(corpus_id, relative_path)
        return Document(
            relative_path=relative_path,
            data=path.read_bytes(),
            url=path.as_uri(),
        )

    def get_url(self, corpus_id: str, relative_path: str) -> str:
        return self._resolve(corpus_id, relative_path).as_uri()

    def save(self, corpus_id: str, filename: str, data: bytes) -> str:
        """Persist an uploaded file and return its relative path in the corpus."""

        corpus_dir = self._corpus_dir(corpus_id)
        corpus_dir.mkdir(parents=True, exist_ok=True)
        relative_path = _sanitize_filename(filename)
        (corpus_dir / relative_path).write_bytes(data)
        return relative_path
