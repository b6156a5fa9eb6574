from __future__ import annotations

from docintel.ingest.models import ChunkRecord, EnrichedRecord, ExtractedTableRecord, PageRecord
from docintel.storage import CorpusStore


def _records(path: str, text: str):
    document = EnrichedRecord(
        relative_path=path,
        file_url=f"file:///corpus/{path}",
        parsed_pages=[text, None],
        raw_text=text,
        page_count=2,
        parse_mode="LAYOUT",
        language="en",
    )
    page = PageRecord(
        relative_path=path,
        page_id=f"{path}_page_0",
        page_number=0,
        page_content=text,
        page_title="Title",
        content_length=len(text),
        total_pages=2,
    )
    chunk = ChunkRecord(
        relative_path=path,
        chunk_id=f"{path}_chunk_0",
        chunk_number=0,
        chunk_text=text,
        main_section="Title",
        subsection=None,
        detail_section=None,
        chunk_length=len(text),
    )
    table = ExtractedTableRecord(
        relative_path=path,
        chunk_id=f"{path}_chunk_0",
        chunk_number=0,
        table_index=0,
        table_name="Metrics",
        rows=[{"Company": "Acme", "Revenue": "$5M"}],
    )
    return document, page, chunk, table


def _replace(store: CorpusStore, corpus_id: str, *paths: str) -> None:
    records = [_records(path, f"text of {path}") for path in paths]
    store.replace_corpus(
        corpus_id,
        documents=[item[0] for item in records],
        pages=[item[1] for item in records],
        chunks=[item[2] for item in records],
        tables=[item[3] for item in records],
    )


def test_replace_and_load_round_trip(store: CorpusStore) -> None:
    _replace(store, "acme", "b.md", "a.md")

    assert store.list_corpora() == ["acme"]
    documents = store.load_documents("acme")
    assert [document.relative_path for document in documents] == ["a.md", "b.md"]
    assert documents[0].parsed_pages == ["text of a.md", None]
    assert [page.page_id for page in store.load_pages("acme")] == ["a.md_page_0", "b.md_page_0"]
    assert store.load_chunks("acme")[0].main_section == "Title"
    tables = store.load_tables("acme")
    assert tables[0].rows == [{"Company": "Acme", "Revenue": "$5M"}]
    assert tables[0].row_count == 1


def test_replace_is_wholesale_and_scoped_to_the_corpus(store: CorpusStore) -> None:
    _replace(store, "acme", "a.md", "b.md")
    _replace(store, "other", "z.md")
    _replace(store, "acme", "c.md")

    assert [page.relative_path for page in store.load_pages("acme")] == ["c.md"]
    assert [page.relative_path for page in store.load_pages("other")] == ["z.md"]
    assert store.list_corpora() == ["acme", "other"]


def test_tables_can_be_filtered_by_chunk(store: CorpusStore) -> None:
    _replace(store, "acme", "a.md", "b.md")

    tables = store.load_tables("acme", chunk_id="b.md_chunk_0")

    assert [table.relative_path for table in tables] == ["b.md"]
    assert store.load_tables("acme", chunk_id="missing") == []


def test_empty_replace_clears_the_corpus(store: CorpusStore) -> None:
    _replace(store, "acme", "a.md")
    store.replace_corpus("acme", documents=[], pages=[], chunks=[], tables=[])

    assert store.list_corpora() == ["acme"]
    assert store.load_documents("acme") == []
    assert store.load_chunks("acme") == []
