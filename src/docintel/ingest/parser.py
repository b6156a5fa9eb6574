"""Parser stage: document bytes to a page-structured :class:`ParsedDocument`."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from docintel.errors import ParseError

from .extractors import DocxExtractor, ExtractionResult, PDFExtractor, TextExtractor
from .format_detection import DocumentFormat, DocumentFormatDetector
from .language import LanguageDetector
from .models import Page, ParsedDocument, ParseMetadata, ParseMode
from .normalization import normalize_text

LOGGER = logging.getLogger(__name__)

PAGE_JOINER = "\n\n"


class Parser(Protocol):
    """Narrow contract of the parsing collaborator."""

    def parse(
        self,
        data: bytes,
        *,
        path: str,
        mode: ParseMode = ParseMode.LAYOUT,
        page_split: bool = True,
    ) -> ParsedDocument:
        ...


class DocumentParser:
    """Local parser dispatching to format-specific extractors."""

    def __init__(
        self,
        *,
        ocr_language: str = "eng",
        min_text_ratio: float = 0.05,
        ocr_enabled: bool = True,
        language_detector: Optional[LanguageDetector] = None,
    ) -> None:
        self.pdf_extractor = PDFExtractor(
            ocr_language=ocr_language,
            min_text_ratio=min_text_ratio,
            ocr_enabled=ocr_enabled,
        )
        self.docx_extractor = DocxExtractor()
        self.text_extractor = TextExtractor()
        self.language_detector = language_detector or LanguageDetector()

    def parse(
        self,
        data: bytes,
        *,
        path: str,
        mode: ParseMode = ParseMode.LAYOUT,
        page_split: bool = True,
        mime_type: Optional[str] = None,
    ) -> ParsedDocument:
        """Parse ``data`` into ordered pages.

        With ``page_split`` the result holds one page per physical page and
        ``metadata.page_count == len(pages)``; without it a single synthetic
        page carries the whole document while ``page_count`` still reports the
        physical page count.
        """

        mode = ParseMode(mode)
        try:
            document_format = DocumentFormatDetector.detect(path, mime_type, data)
        except ValueError as error:
            raise ParseError(str(error), path=path, cause=error) from error

        try:
            result = self._extract(data, document_format, mode)
        except ParseError as error:
            raise ParseError(f"{path}: {error}", path=path, cause=error.__cause__) from error

        page_texts = [normalize_text(text, collapse_spaces=mode is ParseMode.PLAIN) for text in result.pages]
        full_text = PAGE_JOINER.join(text for text in page_texts if text)
        is_empty = not full_text.strip()
        if is_empty:
            LOGGER.warning("Parser produced no text for %s (%s pages)", path, len(page_texts))

        if page_split:
            pages = [Page(document_path=path, index=index, content=text) for index, text in enumerate(page_texts)]
        else:
            pages = [Page(document_path=path, index=0, content=full_text)]

        metadata = ParseMetadata(
            page_count=len(page_texts),
            mode=mode,
            page_split=page_split,
            language=self.language_detector.detect(full_text),
            ocr_performed=result.ocr_performed,
            is_empty=is_empty,
        )
        LOGGER.info(
            "Parsed %s (%s, %s) into %s pages", path, document_format.value, mode.value, metadata.page_count
        )
        return ParsedDocument(path=path, pages=pages, text=full_text, metadata=metadata)

    def _extract(self, data: bytes, document_format: DocumentFormat, mode: ParseMode) -> ExtractionResult:
        if document_format is DocumentFormat.PDF:
            result = self.pdf_extractor.extract(data, mode)
            if result.ocr_performed:
                LOGGER.info("OCR performed on PDF document")
            return result
        if document_format is DocumentFormat.DOCX:
            return self.docx_extractor.extract(data, mode)
        if document_format in (DocumentFormat.TXT, DocumentFormat.MARKDOWN):
            return self.text_extractor.extract(data, mode)
        raise ParseError(f"Unsupported document format: {document_format}")
