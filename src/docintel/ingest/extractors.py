"""Format-specific text extractors used by :mod:`docintel.ingest.parser`."""
from __future__ import annotations

import io
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from typing import List

from docx import Document as load_docx
from pdfminer.high_level import extract_pages
from pdfminer.layout import LAParams, LTTextContainer
from PyPDF2 import PdfReader

from docintel.errors import ParseError

from .models import ParseMode

LOGGER = logging.getLogger(__name__)

PAGE_BREAK = "\f"


@dataclass(slots=True)
class ExtractionResult:
    pages: List[str]
    ocr_performed: bool = False


class PDFExtractor:
    """Extract per-page text from PDF documents with optional OCR fallback."""

    def __init__(self, ocr_language: str = "eng", min_text_ratio: float = 0.05, ocr_enabled: bool = True) -> None:
        self.ocr_language = ocr_language
        self.min_text_ratio = min_text_ratio
        self.ocr_enabled = ocr_enabled

    def extract(self, data: bytes, mode: ParseMode) -> ExtractionResult:
        """Extract text, running OCR when native text is insufficient."""

        pages = self._extract_text(data, mode)
        total_chars = sum(len(page.strip()) for page in pages)
        if not pages or total_chars / len(pages) >= self.min_text_ratio * 1000 or not self.ocr_enabled:
            return ExtractionResult(pages=pages)

        LOGGER.info("PDF text content too small, attempting OCR fallback")
        try:
            ocr_data = self._perform_ocr(data)
        except (RuntimeError, OSError) as error:
            LOGGER.warning("OCR failed (%s); falling back to original extraction", error)
            return ExtractionResult(pages=pages)

        return ExtractionResult(pages=self._extract_text(ocr_data, mode), ocr_performed=True)

    def _extract_text(self, data: bytes, mode: ParseMode) -> List[str]:
        if mode is ParseMode.LAYOUT:
            return self._extract_layout(data)
        return self._extract_plain(data)

    def _extract_plain(self, data: bytes) -> List[str]:
        try:
            reader = PdfReader(io.BytesIO(data))
            page_objects = list(reader.pages)
        except Exception as error:
            raise ParseError("PDF could not be opened", cause=error) from error

        pages: List[str] = []
        for index, page in enumerate(page_objects):
            try:
                pages.append(page.extract_text() or "")
            except Exception as error:
                raise ParseError(f"Failed to extract text from PDF page {index}", cause=error) from error
        return pages

    def _extract_layout(self, data: bytes) -> List[str]:
        pages: List[str] = []
        try:
            for layout in extract_pages(io.BytesIO(data), laparams=LAParams()):
                boxes = [element for element in layout if isinstance(element, LTTextContainer)]
                # Top-to-bottom, then left-to-right reading order.
                boxes.sort(key=lambda box: (-round(box.y1), box.x0))
                blocks = [box.get_text().rstrip("\n") for box in boxes]
                pages.append("\n\n".join(block for block in blocks if block.strip()))
        except Exception as error:
            raise ParseError("PDF layout analysis failed", cause=error) from error
        return pages

    def _perform_ocr(self, data: bytes) -> bytes:
        with tempfile.NamedTemporaryFile(suffix=".pdf") as src, tempfile.NamedTemporaryFile(
            suffix=".pdf"
        ) as dst:
            src.write(data)
            src.flush()
            cmd = [
                "ocrmypdf",
                "--force-ocr",
                "--output-type",
                "pdf",
                "-l",
                self.ocr_language,
                src.name,
                dst.name,
            ]
            LOGGER.debug("Running OCR command: %s", " ".join(cmd))
            try:
                subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            except FileNotFoundError as exc:  # pragma: no cover - depends on environment
                raise RuntimeError("ocrmypdf is not installed") from exc
            except subprocess.CalledProcessError as exc:  # pragma: no cover - depends on data
                raise RuntimeError(f"ocrmypdf failed: {exc.stderr.decode(errors='ignore')}") from exc

            dst.seek(0)
            return dst.read()


class DocxExtractor:
    """Extract text from Microsoft Word documents.

    In ``LAYOUT`` mode heading styles become markdown headers and tables
    become pipe-delimited markdown tables.
    """

    def extract(self, data: bytes, mode: ParseMode) -> ExtractionResult:
        try:
            document = load_docx(io.BytesIO(data))
        except Exception as error:
            raise ParseError("DOCX could not be opened", cause=error) from error

        parts: List[str] = []
        for block in document.iter_inner_content():
            if hasattr(block, "rows"):
                table_text = self._render_table(block) if mode is ParseMode.LAYOUT else self._plain_table(block)
                if table_text:
                    parts.append(table_text)
                continue
            text = block.text
            if not text:
                continue
            parts.append(self._render_heading(block, text) if mode is ParseMode.LAYOUT else text)
        return ExtractionResult(pages=["\n\n".join(parts)])

    @staticmethod
    def _render_heading(paragraph, text: str) -> str:
        style_name = getattr(paragraph.style, "name", "") or ""
        if style_name.startswith("Heading "):
            level = style_name.rsplit(" ", 1)[-1]
            if level.isdigit():
                return f"{'#' * min(int(level), 6)} {text}"
        if style_name == "Title":
            return f"# {text}"
        return text

    @staticmethod
    def _render_table(table) -> str:
        lines: List[str] = []
        for row_index, row in enumerate(table.rows):
            cells = [cell.text.replace("|", "/").replace("\n", " ").strip() for cell in row.cells]
            lines.append("| " + " | ".join(cells) + " |")
            if row_index == 0:
                lines.append("|" + "|".join(" --- " for _ in cells) + "|")
        return "\n".join(lines)

    @staticmethod
    def _plain_table(table) -> str:
        return "\n".join("\t".join(cell.text.strip() for cell in row.cells) for row in table.rows)


class TextExtractor:
    """Extract text from plaintext and markdown documents.

    Form feeds separate pages, the same convention PDF text tools emit.
    """

    def extract(self, data: bytes, mode: ParseMode) -> ExtractionResult:
        del mode  # Plain text carries no layout to preserve or discard.
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            LOGGER.info("Text document is not valid UTF-8; decoding as latin-1")
            text = data.decode("latin-1")
        if text.endswith(PAGE_BREAK):
            text = text[: -len(PAGE_BREAK)]
        return ExtractionResult(pages=text.split(PAGE_BREAK))
