"""API router exposing corpus ingestion, search and semantic view endpoints."""
from __future__ import annotations

import math
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from docintel.errors import (
    DocIntelError,
    IndexBuildError,
    IndexRetryError,
    NotFoundError,
    QueryError,
)
from docintel.services.corpus import CorpusService, get_corpus_service

router = APIRouter()


class UploadResponse(BaseModel):
    status: str
    corpus_id: str
    saved_files: list[str]
    duration_seconds: float


class IngestResponse(BaseModel):
    """Counts from one ingestion run."""

    corpus_id: str
    run_id: str
    documents_processed: int
    documents_skipped: int
    pages: int
    chunks: int
    tables: int
    skipped_chunks: int
    cancelled: bool
    persisted: bool
    skipped: list[dict[str, Optional[str]]]


class SearchRequest(BaseModel):
    query: str = Field(..., description="Free-text query.")
    index: str = Field("pages", description="Index granularity: pages or chunks.")
    filter: Optional[dict[str, Any]] = Field(
        None, description='Attribute filter, e.g. {"@lte": {"page_number": 3}}.'
    )
    limit: int = Field(10, ge=1, le=100)
    columns: Optional[list[str]] = Field(None, description="Columns returned for every hit.")


class SearchHitModel(BaseModel):
    id: str
    score: float
    values: dict[str, Any]


class SearchResponse(BaseModel):
    corpus_id: str
    index: str
    results: list[SearchHitModel]


class TableModel(BaseModel):
    relative_path: str
    chunk_id: str
    chunk_number: int
    table_index: int
    table_name: str
    rows: list[dict[str, str]]


class TablesResponse(BaseModel):
    corpus_id: str
    tables: list[TableModel]


class SemanticQueryRequest(BaseModel):
    dimensions: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    filter: Optional[dict[str, Any]] = None
    order_by: list[str] = Field(default_factory=list, description='Terms such as "avg_roa DESC".')
    limit: Optional[int] = Field(None, ge=1)
    version: Optional[int] = Field(None, ge=1)


class SemanticQueryResponse(BaseModel):
    view: str
    rows: list[dict[str, Any]]


def _http_error(exc: DocIntelError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, QueryError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, IndexRetryError):
        return HTTPException(
            status_code=503,
            detail=str(exc),
            headers={"Retry-After": str(int(math.ceil(exc.retry_after)))},
        )
    if isinstance(exc, IndexBuildError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/corpora/{corpus_id}/documents", response_model=UploadResponse, tags=["corpora"])
async def upload_documents(
    corpus_id: str,
    files: list[UploadFile] = File(...),
    service: CorpusService = Depends(get_corpus_service),
) -> UploadResponse:
    """Store one or more documents in the corpus content store."""

    if not files:
        raise HTTPException(status_code=400, detail="At least one file must be provided")
    try:
        result = await service.upload(corpus_id, files)
    except DocIntelError as exc:
        raise _http_error(exc) from exc
    return UploadResponse(
        status="ok",
        corpus_id=result.corpus_id,
        saved_files=result.saved_files,
        duration_seconds=result.duration_seconds,
    )


@router.post("/corpora/{corpus_id}/ingest", response_model=IngestResponse, tags=["corpora"])
async def ingest_corpus(
    corpus_id: str,
    service: CorpusService = Depends(get_corpus_service),
) -> IngestResponse:
    """Parse, chunk, enrich and index every document of the corpus."""

    try:
        result = await run_in_threadpool(service.ingest, corpus_id)
    except DocIntelError as exc:
        raise _http_error(exc) from exc
    return IngestResponse(
        **result.summary(),
        skipped=[
            {"path": outcome.relative_path, "stage": outcome.stage, "reason": outcome.reason}
            for outcome in result.skipped
        ],
    )


@router.post("/corpora/{corpus_id}/search", response_model=SearchResponse, tags=["search"])
async def search_corpus(
    corpus_id: str,
    request: SearchRequest,
    service: CorpusService = Depends(get_corpus_service),
) -> SearchResponse:
    try:
        rows = await run_in_threadpool(
            lambda: service.search(
                corpus_id,
                request.query,
                index=request.index,
                filter=request.filter,
                limit=request.limit,
                columns=request.columns,
            )
        )
    except DocIntelError as exc:
        raise _http_error(exc) from exc
    return SearchResponse(
        corpus_id=corpus_id,
        index=request.index,
        results=[SearchHitModel(id=row.id, score=row.score, values=row.values) for row in rows],
    )


@router.get("/corpora/{corpus_id}/tables", response_model=TablesResponse, tags=["corpora"])
def list_tables(
    corpus_id: str,
    chunk_id: Optional[str] = None,
    service: CorpusService = Depends(get_corpus_service),
) -> TablesResponse:
    """Structured tables extracted from the corpus, optionally for one chunk."""

    try:
        records = service.tables(corpus_id, chunk_id=chunk_id)
    except DocIntelError as exc:
        raise _http_error(exc) from exc
    return TablesResponse(
        corpus_id=corpus_id,
        tables=[
            TableModel(
                relative_path=record.relative_path,
                chunk_id=record.chunk_id,
                chunk_number=record.chunk_number,
                table_index=record.table_index,
                table_name=record.table_name,
                rows=record.rows,
            )
            for record in records
        ],
    )


@router.get("/semantic-views", tags=["semantic"])
def list_semantic_views(service: CorpusService = Depends(get_corpus_service)) -> list[dict[str, Any]]:
    return service.semantic_views()


@router.post("/semantic-views/{name}/query", response_model=SemanticQueryResponse, tags=["semantic"])
def query_semantic_view(
    name: str,
    request: SemanticQueryRequest,
    service: CorpusService = Depends(get_corpus_service),
) -> SemanticQueryResponse:
    """Aggregate the requested metrics by the requested dimensions."""

    try:
        rows = service.semantic_query(
            name,
            dimensions=request.dimensions,
            metrics=request.metrics,
            filter=request.filter,
            order_by=request.order_by,
            limit=request.limit,
            version=request.version,
        )
    except DocIntelError as exc:
        raise _http_error(exc) from exc
    return SemanticQueryResponse(view=name, rows=rows)
