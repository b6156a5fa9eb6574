from __future__ import annotations

import threading
from typing import List, Sequence

import pytest

from docintel.errors import IndexBuildError, IndexRetryError, NotFoundError, QueryError
from docintel.ingest.models import SearchIndexEntry
from docintel.search import HashingEmbedder, InMemoryVectorBackend, IndexRegistry, IndexState, SearchIndex
from docintel.search.index import PAGE_ATTRIBUTES


def _page(number: int, text: str) -> SearchIndexEntry:
    page_id = f"report.md_page_{number}"
    return SearchIndexEntry(
        id=page_id,
        text=text,
        attributes={
            "page_id": page_id,
            "page_number": number,
            "page_title": f"Page {number}",
            "relative_path": "report.md",
        },
    )


PAGES = [
    _page(1, "board meeting minutes and attendance"),
    _page(2, "revenue growth revenue growth"),
    _page(3, "office relocation schedule"),
    _page(4, "revenue growth forecast for next year"),
    _page(5, "appendix glossary"),
]


class _CountingEmbedder:
    def __init__(self) -> None:
        self.inner = HashingEmbedder()
        self.batches: List[List[str]] = []

    @property
    def model_name(self) -> str:
        return "counting"

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        return self.inner.embed_texts(texts)


class _BlockingEmbedder(_CountingEmbedder):
    """Blocks batches of more than one text until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if len(texts) > 1:
            self.started.set()
            self.release.wait(5)
        return super().embed_texts(texts)


def _index(embedder=None, backend=None, **kwargs) -> SearchIndex:
    return SearchIndex(
        "acme_pages",
        embedder=embedder or HashingEmbedder(),
        backend=backend or InMemoryVectorBackend(),
        attributes=PAGE_ATTRIBUTES,
        text_field="page_content",
        **kwargs,
    )


def test_filtered_search_ranks_by_similarity() -> None:
    index = _index()
    index.build(PAGES)

    result = index.search("revenue growth", filter={"@lte": {"page_number": 3}}, limit=10)

    assert result.generation == 1
    assert len(result.hits) == 3
    assert all(hit.attributes["page_number"] <= 3 for hit in result.hits)
    assert result.hits[0].id == "report.md_page_2"
    assert result.hits[0].score == pytest.approx(1.0)
    assert result.hits[0].text == "revenue growth revenue growth"


def test_limit_and_blank_query() -> None:
    index = _index()
    index.build(PAGES)

    assert len(index.search("revenue", limit=2).hits) == 2
    assert index.search("   ").hits == []
    with pytest.raises(QueryError):
        index.search("revenue", limit=0)
    with pytest.raises(QueryError):
        index.search("revenue", filter={"@eq": {"chunk_id": "x"}})


def test_builds_swap_generations_and_drop_unread_collections() -> None:
    backend = InMemoryVectorBackend()
    index = _index(backend=backend)

    first = index.build(PAGES[:2])
    index.build(PAGES[:3])
    third = index.build(PAGES)

    assert first.number == 1 and third.number == 3
    assert index.generation == 3
    assert index.state is IndexState.READY
    assert backend.collection_names() == ["acme_pages__gen3"]


class _SlowQueryEmbedder(_CountingEmbedder):
    """Blocks the embedding of a single query text until released."""

    def __init__(self) -> None:
        super().__init__()
        self.querying = threading.Event()
        self.release = threading.Event()

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if list(texts) == ["revenue growth"]:
            self.querying.set()
            self.release.wait(5)
        return super().embed_texts(texts)


def test_reader_keeps_its_generation_across_two_rebuilds() -> None:
    embedder = _SlowQueryEmbedder()
    backend = InMemoryVectorBackend()
    index = _index(embedder=embedder, backend=backend)
    index.build(PAGES[:2])
    results = []

    reader = threading.Thread(target=lambda: results.append(index.search("revenue growth")))
    reader.start()
    assert embedder.querying.wait(5)

    index.build(PAGES[:3])
    index.build(PAGES)
    assert backend.collection_names() == ["acme_pages__gen1", "acme_pages__gen3"]

    embedder.release.set()
    reader.join(5)

    (result,) = results
    assert result.generation == 1
    assert {hit.id for hit in result.hits} == {"report.md_page_1", "report.md_page_2"}
    assert backend.collection_names() == ["acme_pages__gen3"]


def test_update_reuses_embeddings_of_unchanged_entries() -> None:
    embedder = _CountingEmbedder()
    index = _index(embedder=embedder)
    index.build(PAGES[:3])

    generation = index.update([_page(4, "new revenue page")], remove=["report.md_page_1"])

    assert embedder.batches[-1] == ["new revenue page"]
    assert sorted(generation.entries) == ["report.md_page_2", "report.md_page_3", "report.md_page_4"]
    assert generation.number == 2


def test_stale_index_rebuilds_from_source_before_answering() -> None:
    calls = {"count": 0}

    def source():
        calls["count"] += 1
        return PAGES

    index = _index(source=source)
    assert index.state is IndexState.STALE

    assert index.search("revenue").generation == 1
    assert calls["count"] == 1
    assert index.state is IndexState.READY

    index.mark_stale()
    assert index.search("revenue").generation == 2
    assert calls["count"] == 2


def test_unbuilt_index_without_source_cannot_answer() -> None:
    with pytest.raises(IndexBuildError):
        _index().search("revenue")
    with pytest.raises(IndexBuildError):
        _index().build()


def test_search_during_build_asks_caller_to_retry() -> None:
    embedder = _BlockingEmbedder()
    index = _index(embedder=embedder, wait_seconds=0.0)
    builder = threading.Thread(target=index.build, args=(PAGES,))
    builder.start()
    try:
        assert embedder.started.wait(5)
        assert index.state is IndexState.BUILDING
        with pytest.raises(IndexRetryError) as excinfo:
            index.search("revenue")
        assert excinfo.value.retry_after >= 1.0
    finally:
        embedder.release.set()
        builder.join(5)

    assert index.search("revenue").generation == 1


def test_search_during_build_waits_for_the_new_generation() -> None:
    embedder = _BlockingEmbedder()
    index = _index(embedder=embedder, wait_seconds=5.0)
    builder = threading.Thread(target=index.build, args=(PAGES,))
    builder.start()
    assert embedder.started.wait(5)
    timer = threading.Timer(0.1, embedder.release.set)
    timer.start()
    try:
        result = index.search("revenue growth")
    finally:
        embedder.release.set()
        builder.join(5)
        timer.cancel()

    assert result.generation == 1
    assert result.hits


def test_failed_build_keeps_serving_the_previous_generation() -> None:
    class _FailingBackend(InMemoryVectorBackend):
        fail = False

        def build(self, collection, entries, embeddings):
            if self.fail:
                raise RuntimeError("disk full")
            return super().build(collection, entries, embeddings)

    backend = _FailingBackend()
    index = _index(backend=backend)
    index.build(PAGES)
    backend.fail = True

    with pytest.raises(IndexBuildError):
        index.build(PAGES[:1])

    assert index.state is IndexState.READY
    assert index.search("revenue").generation == 1


def test_registry_names_indexes_per_corpus_and_granularity(registry: IndexRegistry) -> None:
    pages = registry.get_or_create("acme", "pages")
    chunks = registry.get_or_create("acme", "chunks")

    assert pages.name == "acme_pages"
    assert pages.text_field == "page_content"
    assert chunks.text_field == "chunk_text"
    assert "main_section" in chunks.attributes
    assert registry.get("acme", "pages") is pages
    with pytest.raises(NotFoundError):
        registry.get("other", "pages")
    with pytest.raises(NotFoundError):
        registry.get_or_create("acme", "sentences")
