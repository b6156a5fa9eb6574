"""Format detection for documents pulled from the content store."""
from __future__ import annotations

import mimetypes
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Optional

PDF_MAGIC = b"%PDF-"


class DocumentFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    TXT = "txt"
    MARKDOWN = "md"


_BY_MIME: Dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
    "text/plain": DocumentFormat.TXT,
    "text/markdown": DocumentFormat.MARKDOWN,
    "text/x-markdown": DocumentFormat.MARKDOWN,
}

_BY_SUFFIX: Dict[str, DocumentFormat] = {
    **{fmt.value: fmt for fmt in DocumentFormat},
    "markdown": DocumentFormat.MARKDOWN,
    "text": DocumentFormat.TXT,
}


def _bare_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    return mime_type.split(";", 1)[0].strip().lower() or None


class DocumentFormatDetector:
    """Resolve a :class:`DocumentFormat` from whatever the caller knows about a file.

    Order of precedence: a declared MIME type (parameters such as
    ``charset`` are ignored), the ``%PDF-`` magic number, the MIME type
    :mod:`mimetypes` guesses from the name, and finally the bare suffix.
    """

    @classmethod
    def detect(cls, file_name: str, mime_type: Optional[str] = None, data: bytes | None = None) -> DocumentFormat:
        declared = _bare_mime(mime_type)
        if declared in _BY_MIME:
            return _BY_MIME[declared]
        if data is not None and data.startswith(PDF_MAGIC):
            return DocumentFormat.PDF

        guessed = _bare_mime(mimetypes.guess_type(file_name)[0])
        if guessed in _BY_MIME:
            return _BY_MIME[guessed]

        suffix = PurePosixPath(file_name).suffix.lower().lstrip(".")
        fmt = _BY_SUFFIX.get(suffix)
        if fmt is None:
            raise ValueError(f"Unsupported file format: {file_name}")
        return fmt


__all__ = ["DocumentFormat", "DocumentFormatDetector", "PDF_MAGIC"]
