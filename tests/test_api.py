from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from docintel.main import app
from docintel.semantic import load_registry
from docintel.services.corpus import CorpusService, get_corpus_service, reset_corpus_service_cache

REPORT = (
    "# Annual Report\nIntro paragraph about the company.\f"
    "## Revenue Summary\n| Company | Revenue |\n| --- | --- |\n| Acme | $5M |\f"
    "## Outlook\nGrowth is expected to continue next year."
).encode("utf-8")


@pytest.fixture
def client(settings, content_store, store, registry, warehouse_engine):
    service = CorpusService(
        settings,
        content_store=content_store,
        store=store,
        registry=registry,
        semantic_registry=load_registry(settings),
        warehouse_engine=warehouse_engine,
        schema_translate_map={"CYBERSYN": None},
    )
    app.dependency_overrides[get_corpus_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        reset_corpus_service_cache()


def _upload_and_ingest(client: TestClient) -> dict:
    files = [
        ("files", ("report.md", REPORT, "text/markdown")),
        ("files", ("scan.xyz", b"\x00\x01", "application/octet-stream")),
    ]
    upload = client.post("/corpora/acme/documents", files=files)
    assert upload.status_code == 200
    assert upload.json()["saved_files"] == ["report.md", "scan.xyz"]

    ingest = client.post("/corpora/acme/ingest")
    assert ingest.status_code == 200
    return ingest.json()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.text == "ok"


def test_ingest_reports_counts_and_skips(client: TestClient) -> None:
    payload = _upload_and_ingest(client)

    assert payload["corpus_id"] == "acme"
    assert payload["documents_processed"] == 1
    assert payload["documents_skipped"] == 1
    assert payload["pages"] == 3
    assert payload["tables"] == 1
    assert payload["persisted"] is True
    assert [(item["path"], item["stage"]) for item in payload["skipped"]] == [("scan.xyz", "parse")]


def test_search_projects_requested_columns(client: TestClient) -> None:
    _upload_and_ingest(client)

    response = client.post(
        "/corpora/acme/search",
        json={
            "query": "revenue",
            "filter": {"@lte": {"page_number": 1}},
            "columns": ["page_number", "page_title"],
        },
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results
    assert all(set(result["values"]) == {"page_number", "page_title"} for result in results)
    assert all(result["values"]["page_number"] <= 1 for result in results)


def test_search_errors_map_to_status_codes(client: TestClient) -> None:
    _upload_and_ingest(client)

    unknown_column = client.post("/corpora/acme/search", json={"query": "x", "columns": ["chunk_text"]})
    bad_filter = client.post("/corpora/acme/search", json={"query": "x", "filter": {"@like": {"page_title": "a"}}})
    unknown_corpus = client.post("/corpora/ghost/search", json={"query": "x"})
    unknown_index = client.post("/corpora/acme/search", json={"query": "x", "index": "sentences"})

    assert unknown_column.status_code == 400
    assert bad_filter.status_code == 400
    assert unknown_corpus.status_code == 404
    assert unknown_index.status_code == 404


def test_chunk_index_search(client: TestClient) -> None:
    _upload_and_ingest(client)

    response = client.post(
        "/corpora/acme/search",
        json={"query": "outlook growth", "index": "chunks", "limit": 1},
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [result["id"] for result in results] == ["report.md_chunk_2"]
    assert results[0]["values"]["subsection"] == "Outlook"


def test_tables_endpoint(client: TestClient) -> None:
    _upload_and_ingest(client)

    response = client.get("/corpora/acme/tables", params={"chunk_id": "report.md_chunk_1"})

    assert response.status_code == 200
    tables = response.json()["tables"]
    assert tables[0]["table_name"] == "Revenue Summary"
    assert tables[0]["rows"] == [{"Company": "Acme", "Revenue": "$5M"}]
    assert client.get("/corpora/ghost/tables").status_code == 404


def test_tables_of_corpus_with_only_skipped_documents_are_empty(client: TestClient) -> None:
    files = [("files", ("scan.xyz", b"\x00\x01", "application/octet-stream"))]
    assert client.post("/corpora/scans/documents", files=files).status_code == 200

    ingest = client.post("/corpora/scans/ingest")
    assert ingest.status_code == 200
    assert ingest.json()["documents_processed"] == 0

    response = client.get("/corpora/scans/tables")

    assert response.status_code == 200
    assert response.json() == {"corpus_id": "scans", "tables": []}


def test_semantic_view_endpoints(client: TestClient) -> None:
    listing = client.get("/semantic-views")
    assert listing.status_code == 200
    assert [view["name"] for view in listing.json()] == [
        "BANKING_MARKET_INTELLIGENCE",
        "BANKING_PERFORMANCE_ANALYTICS",
        "BANKING_RISK_ANALYTICS",
    ]

    response = client.post(
        "/semantic-views/BANKING_PERFORMANCE_ANALYTICS/query",
        json={
            "dimensions": ["banks.NAME"],
            "metrics": ["avg_roa"],
            "filter": {"@eq": {"STATE_ABBREVIATION": "CA"}},
            "order_by": ["avg_roa DESC"],
        },
    )
    assert response.status_code == 200
    assert response.json() == {
        "view": "BANKING_PERFORMANCE_ANALYTICS",
        "rows": [{"NAME": "Alpha Bank", "avg_roa": 1.5}, {"NAME": "Beta Bank", "avg_roa": 0.5}],
    }

    unknown_view = client.post("/semantic-views/NOPE/query", json={"metrics": ["avg_roa"]})
    unknown_metric = client.post("/semantic-views/BANKING_PERFORMANCE_ANALYTICS/query", json={"metrics": ["nope"]})
    assert unknown_view.status_code == 404
    assert unknown_metric.status_code == 400
