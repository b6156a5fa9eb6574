"""Structured table extraction from table-bearing chunks."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ValidationError

from docintel.errors import ExtractionError
from docintel.ingest.models import ExtractedTable

from .classifier import is_divider_row, split_pipe_row
from .generation import ModelNotReadyError, TextGenerator

LOGGER = logging.getLogger(__name__)

CAPTION_MAX_CHARS = 100
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$")
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

EXTRACTION_PROMPT = (
    "Extract tables from markdown text. Return JSON with tables array. "
    "Each table has table_name and data array. "
    "Each data item is an object with key-value pairs from the table row. "
    "Use column headers as keys. Skip separator rows with ---. "
    'Example: {"tables":[{"table_name":"Metrics","data":[{"Company":"ABC","Revenue":"$1M"}]}]}'
    "\n\nText:\n"
)

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "tables": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "table_name": {"type": "string"},
                    "data": {"type": "array"},
                },
                "required": ["table_name", "data"],
            },
        }
    },
    "required": ["tables"],
}


class TableExtractor(Protocol):
    def extract_tables(self, text: str) -> List[ExtractedTable]:
        ...


def unique_headers(cells: Sequence[str]) -> List[str]:
    """Fill blank headers and suffix repeated ones (``Value``, ``Value_2``)."""

    headers: List[str] = []
    used: set[str] = set()
    for position, cell in enumerate(cells, start=1):
        base = cell or f"column_{position}"
        name = base
        suffix = 2
        while name in used:
            name = f"{base}_{suffix}"
            suffix += 1
        used.add(name)
        headers.append(name)
    return headers


def _caption(lines: Sequence[str]) -> Optional[str]:
    for line in reversed(lines):
        stripped = line.strip()
        if not stripped:
            continue
        heading = _HEADING_RE.match(stripped)
        if heading:
            return heading.group(1).strip()
        if len(stripped) <= CAPTION_MAX_CHARS and not stripped.endswith("."):
            return stripped.rstrip(":").strip() or None
        return None
    return None


class MarkdownTableExtractor:
    """Deterministic parser for pipe-delimited markdown tables.

    The first row of each table supplies the keys, divider rows are skipped,
    and every remaining row becomes one ``{header: cell}`` mapping in column
    order.
    """

    def extract_tables(self, text: str) -> List[ExtractedTable]:
        tables: List[ExtractedTable] = []
        preceding: List[str] = []
        block: List[List[str]] = []

        def flush() -> None:
            if not block:
                return
            table = self._build_table(block, preceding, len(tables) + 1)
            if table is not None:
                tables.append(table)

        for line in text.splitlines():
            cells = split_pipe_row(line)
            if cells is not None:
                block.append(cells)
                continue
            if block:
                flush()
                block = []
                preceding = []
            preceding.append(line)
        flush()
        return tables

    @staticmethod
    def _build_table(block: List[List[str]], preceding: List[str], number: int) -> Optional[ExtractedTable]:
        rows = [cells for cells in block if not is_divider_row(cells)]
        if len(rows) < 2:
            return None
        header_cells, *data_rows = rows
        rendered: List[Dict[str, str]] = []
        for cells in data_rows:
            if not any(cells):
                continue
            width = max(len(header_cells), len(cells))
            headers = unique_headers(list(header_cells) + [""] * (width - len(header_cells)))
            padded = list(cells) + [""] * (width - len(cells))
            rendered.append(dict(zip(headers, padded)))
        if not rendered:
            return None
        return ExtractedTable(name=_caption(preceding) or f"Table {number}", rows=rendered)


class ExtractedTablePayload(BaseModel):
    table_name: str
    data: List[Any]


class ExtractionPayload(BaseModel):
    tables: List[ExtractedTablePayload]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_extraction_reply(reply: str) -> List[ExtractedTable]:
    """Validate a model reply against the extraction schema."""

    match = _JSON_OBJECT_RE.search(reply or "")
    if not match:
        raise ExtractionError("Model reply does not contain a JSON object")
    try:
        payload = ExtractionPayload.model_validate_json(match.group(0))
    except ValidationError as error:
        raise ExtractionError("Model reply does not match the table schema", cause=error) from error

    tables: List[ExtractedTable] = []
    for table in payload.tables:
        rows: List[Dict[str, str]] = []
        for item in table.data:
            if not isinstance(item, dict):
                raise ExtractionError(f"Row of table {table.table_name!r} is not an object")
            rows.append({str(key): _stringify(value) for key, value in item.items()})
        tables.append(ExtractedTable(name=table.table_name, rows=rows))
    return tables


class GenerativeTableExtractor:
    """Extractor prompting a text-generation model for schema-shaped JSON."""

    def __init__(self, generator: TextGenerator, *, max_tokens: int = 1024) -> None:
        self.generator = generator
        self.max_tokens = max_tokens

    def build_prompt(self, text: str) -> str:
        schema = json.dumps(EXTRACTION_SCHEMA, separators=(",", ":"))
        return f"{EXTRACTION_PROMPT}{text}\n\nRespond with JSON matching this schema: {schema}"

    def extract_tables(self, text: str) -> List[ExtractedTable]:
        try:
            reply = self.generator.generate(self.build_prompt(text), max_tokens=self.max_tokens)
        except ModelNotReadyError as error:
            raise ExtractionError("Extraction model is unavailable", cause=error) from error
        return parse_extraction_reply(reply)


__all__ = [
    "EXTRACTION_SCHEMA",
    "GenerativeTableExtractor",
    "MarkdownTableExtractor",
    "TableExtractor",
    "parse_extraction_reply",
    "unique_headers",
]
