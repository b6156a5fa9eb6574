"""Runtime configuration assembled from environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Tuple

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADER_LEVELS: Tuple[Tuple[str, str], ...] = (
    ("#", "main_section"),
    ("##", "subsection"),
    ("###", "detail"),
)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


@dataclass(frozen=True, slots=True)
class RetrySettings:
    """Timeout and backoff policy applied to external-service calls."""

    timeout_seconds: float = 60.0
    max_attempts: int = 4
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Per-run configuration passed explicitly through every stage."""

    content_root: str = "data"
    database_url: str = "sqlite:///docintel.db"
    warehouse_url: Optional[str] = None
    parse_mode: str = "LAYOUT"
    chunk_chars: int = 2000
    overlap_chars: int = 200
    header_levels: Tuple[Tuple[str, str], ...] = DEFAULT_HEADER_LEVELS
    max_workers: int = 4
    retry: RetrySettings = field(default_factory=RetrySettings)
    classifier_backend: str = "heuristic"
    extractor_backend: str = "markdown"
    prefilter_enabled: bool = True
    vector_store: str = "memory"
    chroma_persist_dir: str = "chroma_db"
    embedding_backend: str = "hash"
    embedding_model_path: str = "sentence-transformers/all-MiniLM-L6-v2"
    llm_model_path: Optional[str] = None
    llm_max_tokens: int = 512
    ocr_language: str = "eng"
    index_wait_seconds: float = 30.0
    semantic_views_dir: Optional[str] = None
    log_level: str = "INFO"
    audit_log_path: str = "logs/ingest_audit.log"

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        defaults = cls()
        database_url = _env_str("DOCINTEL_DATABASE_URL", defaults.database_url)
        return cls(
            content_root=_env_str("DOCINTEL_CONTENT_ROOT", defaults.content_root),
            database_url=database_url,
            warehouse_url=os.getenv("DOCINTEL_WAREHOUSE_URL") or None,
            parse_mode=_env_str("DOCINTEL_PARSE_MODE", defaults.parse_mode).upper(),
            chunk_chars=_env_int("DOCINTEL_CHUNK_CHARS", defaults.chunk_chars),
            overlap_chars=_env_int("DOCINTEL_OVERLAP_CHARS", defaults.overlap_chars),
            max_workers=max(1, _env_int("DOCINTEL_MAX_WORKERS", defaults.max_workers)),
            retry=RetrySettings(
                timeout_seconds=_env_float("DOCINTEL_SERVICE_TIMEOUT", 60.0),
                max_attempts=max(1, _env_int("DOCINTEL_SERVICE_ATTEMPTS", 4)),
                backoff_seconds=_env_float("DOCINTEL_BACKOFF_SECONDS", 0.5),
                backoff_max_seconds=_env_float("DOCINTEL_BACKOFF_MAX_SECONDS", 8.0),
            ),
            classifier_backend=_env_str("DOCINTEL_CLASSIFIER", defaults.classifier_backend).lower(),
            extractor_backend=_env_str("DOCINTEL_EXTRACTOR", defaults.extractor_backend).lower(),
            prefilter_enabled=_env_flag("DOCINTEL_PREFILTER", True),
            vector_store=_env_str("VECTOR_STORE", defaults.vector_store).lower(),
            chroma_persist_dir=_env_str("CHROMA_PERSIST_DIR", defaults.chroma_persist_dir),
            embedding_backend=_env_str("EMBEDDING_BACKEND", defaults.embedding_backend).lower(),
            embedding_model_path=_env_str("EMBEDDING_MODEL_PATH", defaults.embedding_model_path),
            llm_model_path=os.getenv("LLM_MODEL_PATH") or None,
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", defaults.llm_max_tokens),
            ocr_language=_env_str("OCR_LANG", defaults.ocr_language),
            index_wait_seconds=_env_float("DOCINTEL_INDEX_WAIT_SECONDS", defaults.index_wait_seconds),
            semantic_views_dir=os.getenv("DOCINTEL_SEMANTIC_VIEWS_DIR") or None,
            log_level=_env_str("DOCINTEL_LOG_LEVEL", defaults.log_level),
            audit_log_path=_env_str("DOCINTEL_AUDIT_LOG", defaults.audit_log_path),
        )

    @property
    def effective_warehouse_url(self) -> str:
        return self.warehouse_url or self.database_url


@lru_cache()
def get_settings() -> PipelineSettings:
    """Return settings read once from the environment."""

    return PipelineSettings.from_env()


def reset_settings_cache() -> None:
    """Clear cached settings (primarily for testing)."""

    get_settings.cache_clear()  # type: ignore[attr-defined]
