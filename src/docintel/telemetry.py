"""Structured lifecycle events for ingestion, indexing and search.

Every event is a dict message logged through :mod:`logging`;
:class:`docintel.logging_config.MinimalJSONFormatter` renders it as one
JSON object. Skip records go to the separate audit logger.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from docintel.logging_config import AUDIT_LOGGER_NAME

LOGGER = logging.getLogger("docintel.telemetry")
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)


def _describe_error(exc: BaseException | str) -> str:
    if isinstance(exc, BaseException):
        return f"{type(exc).__name__}: {exc}"
    return str(exc)


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    run_id: str | None = None,
    corpus_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    **payload: Any,
) -> None:
    """Log ``step`` with the run/corpus identifiers that are set.

    An exception instance travels as ``exc_info`` so the formatter renders
    its traceback; ``exc`` itself is summarised under ``exc``.
    """

    target = logger or LOGGER
    identifiers = {"run_id": run_id, "corpus_id": corpus_id}
    event: dict[str, Any] = {"step": step, "module": target.name}
    event.update({key: value for key, value in identifiers.items() if value})
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    if details is not None:
        event["details"] = details
    event.update(payload)
    if exc is not None:
        event["exc"] = _describe_error(exc)

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    target.log(numeric_level, event, exc_info=exc if isinstance(exc, BaseException) else None)


def emit_ingest_event(
    step: str,
    *,
    corpus_id: str,
    path: str,
    run_id: str | None = None,
    size_bytes: int | None = None,
    duration_ms: float | None = None,
    language: str | None = None,
    pages: int | None = None,
    chunks: int | None = None,
    tables: int | None = None,
) -> None:
    details = {
        "path": path,
        "size_bytes": size_bytes,
        "language": language,
        "pages": pages,
        "chunks": chunks,
        "tables": tables,
    }
    log_event(LOGGER, step, run_id=run_id, corpus_id=corpus_id, duration_ms=duration_ms, details=details)


def emit_skip_record(
    event: str,
    *,
    corpus_id: str,
    path: str,
    stage: str,
    reason: str,
    run_id: str | None = None,
    chunk_id: str | None = None,
) -> None:
    """Write the audit record explaining why a document or chunk was dropped."""

    record: dict[str, Any] = {
        "event": event,
        "corpus_id": corpus_id,
        "path": path,
        "stage": stage,
        "reason": reason,
    }
    if run_id:
        record["run_id"] = run_id
    if chunk_id:
        record["chunk_id"] = chunk_id
    AUDIT_LOGGER.info(record)


def emit_index_event(
    step: str,
    *,
    index: str,
    generation: int,
    count: int,
    backend: str,
    duration_ms: float | None = None,
    error: BaseException | None = None,
) -> None:
    details = {"index": index, "generation": generation, "count": count, "backend": backend}
    level = "error" if error else "info"
    log_event(LOGGER, step, level=level, duration_ms=duration_ms, details=details, exc=error)


def emit_search_event(
    *,
    index: str,
    generation: int,
    query: str,
    limit: int,
    results: int,
    duration_ms: float,
) -> None:
    details = {
        "index": index,
        "generation": generation,
        "query_preview": query[:120],
        "limit": limit,
        "results": results,
    }
    log_event(LOGGER, "search.query", duration_ms=duration_ms, details=details)


def emit_embeddings_event(
    *, model: str, count: int, duration_ms: float, errors: list[str] | None = None
) -> None:
    details = {
        "model": model,
        "count": count,
        "errors": errors or [],
        "per_item_ms": round(duration_ms / count, 3) if count else None,
    }
    log_event(LOGGER, "embeddings.compute", duration_ms=duration_ms, details=details)


def emit_service_retry(*, service: str, attempt: int, delay: float, error: BaseException) -> None:
    details = {"service": service, "attempt": attempt, "delay_s": round(delay, 3), "error": str(error)}
    log_event(LOGGER, "service.retry", level="warning", details=details)


def emit_exception(
    *,
    module: str,
    error: BaseException,
    corpus_id: str | None = None,
    run_id: str | None = None,
) -> None:
    log_event(
        LOGGER,
        "exception",
        level="error",
        run_id=run_id,
        corpus_id=corpus_id,
        details={"module": module},
        exc=error,
    )


@contextmanager
def traced_duration(step: str, *, logger: Optional[logging.Logger] = None, **fields: Any) -> Iterator[None]:
    """Log ``<step>.start`` and then exactly one of ``<step>.complete`` or ``<step>.error``."""

    target = logger or LOGGER
    run_id = fields.pop("run_id", None)
    corpus_id = fields.pop("corpus_id", None)
    log_event(target, f"{step}.start", run_id=run_id, corpus_id=corpus_id, details=fields or None)
    started = time.perf_counter()
    try:
        yield
    except Exception as error:
        log_event(
            target,
            f"{step}.error",
            level="error",
            run_id=run_id,
            corpus_id=corpus_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            details=fields or None,
            exc=error,
        )
        raise
    log_event(
        target,
        f"{step}.complete",
        run_id=run_id,
        corpus_id=corpus_id,
        duration_ms=(time.perf_counter() - started) * 1000.0,
        details=fields or None,
    )


__all__ = [
    "emit_embeddings_event",
    "emit_exception",
    "emit_index_event",
    "emit_ingest_event",
    "emit_search_event",
    "emit_service_retry",
    "emit_skip_record",
    "log_event",
    "traced_duration",
]
