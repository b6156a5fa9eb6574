from __future__ import annotations

import pytest

from docintel.enrich.generation import StaticTextGenerator
from docintel.enrich.tables import (
    GenerativeTableExtractor,
    MarkdownTableExtractor,
    parse_extraction_reply,
    unique_headers,
)
from docintel.errors import ExtractionError


def test_markdown_extractor_uses_first_row_as_keys() -> None:
    text = (
        "Quarterly figures:\n"
        "| Company | Revenue |\n"
        "|---|---|\n"
        "| Acme | $5M |\n"
        "| Beta | $7M |\n"
    )

    tables = MarkdownTableExtractor().extract_tables(text)

    assert len(tables) == 1
    assert tables[0].name == "Quarterly figures"
    assert tables[0].rows == [
        {"Company": "Acme", "Revenue": "$5M"},
        {"Company": "Beta", "Revenue": "$7M"},
    ]


def test_markdown_extractor_names_tables_from_headings_or_position() -> None:
    text = (
        "Revenue grew strongly this year.\n"
        "| Company | Revenue |\n"
        "| --- | --- |\n"
        "| Acme | $5M |\n"
        "\n"
        "## Margins\n"
        "| Company | Margin |\n"
        "| --- | --- |\n"
        "| Acme | 12% |\n"
    )

    tables = MarkdownTableExtractor().extract_tables(text)

    assert [table.name for table in tables] == ["Table 1", "Margins"]
    assert tables[1].rows == [{"Company": "Acme", "Margin": "12%"}]


def test_markdown_extractor_pads_ragged_rows_and_fills_headers() -> None:
    text = "| Value | Value | |\n| --- | --- | --- |\n| 1 | 2 | 3 |\n| 4 | |"

    tables = MarkdownTableExtractor().extract_tables(text)

    assert tables[0].rows == [
        {"Value": "1", "Value_2": "2", "column_3": "3"},
        {"Value": "4", "Value_2": "", "column_3": ""},
    ]


def test_header_only_table_yields_nothing() -> None:
    assert MarkdownTableExtractor().extract_tables("| A | B |\n| --- | --- |") == []


def test_unique_headers() -> None:
    assert unique_headers(["Name", "", "Name", "Name"]) == ["Name", "column_2", "Name_2", "Name_3"]


def test_parse_extraction_reply_accepts_schema_shaped_json() -> None:
    reply = (
        "Here are the tables: "
        '{"tables":[{"table_name":"Metrics","data":[{"Company":"ABC","Revenue":1,"Notes":null}]}]}'
    )

    tables = parse_extraction_reply(reply)

    assert tables[0].name == "Metrics"
    assert tables[0].rows == [{"Company": "ABC", "Revenue": "1", "Notes": ""}]


@pytest.mark.parametrize(
    "reply",
    [
        "I could not find any tables.",
        '{"tables": [{"data": []}]}',
        '{"tables": [{"table_name": "Broken", "data": ["row"]}]}',
        '{"tables": "none"}',
    ],
)
def test_parse_extraction_reply_rejects_malformed_output(reply: str) -> None:
    with pytest.raises(ExtractionError):
        parse_extraction_reply(reply)


def test_generative_extractor_sends_chunk_and_schema() -> None:
    generator = StaticTextGenerator('{"tables": [{"table_name": "T", "data": [{"a": "b"}]}]}')

    tables = GenerativeTableExtractor(generator).extract_tables("| a |\n| b |")

    assert tables[0].rows == [{"a": "b"}]
    assert "| a |\n| b |" in generator.prompts[0]
    assert "Respond with JSON matching this schema" in generator.prompts[0]
