"""Embedding back-ends: feature hashing or Sentence Transformers."""
from __future__ import annotations

import hashlib
import logging
import math
import re
import threading
import time
from typing import Any, List, Optional, Protocol, Sequence

from docintel.config import PipelineSettings
from docintel.errors import IndexBuildError
from docintel.telemetry import emit_embeddings_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
HASH_DIMENSION = 384

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class Embedder(Protocol):
    @property
    def model_name(self) -> str:
        ...

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        ...


def _timed(model: str, texts: Sequence[str], embed) -> List[List[float]]:
    started = time.perf_counter()
    try:
        embeddings = embed(texts)
    except Exception as error:
        emit_embeddings_event(
            model=model,
            count=len(texts),
            duration_ms=(time.perf_counter() - started) * 1000.0,
            errors=[str(error)],
        )
        raise
    emit_embeddings_event(model=model, count=len(texts), duration_ms=(time.perf_counter() - started) * 1000.0)
    return embeddings


class HashingEmbedder:
    """Deterministic bag-of-words vectors built with signed feature hashing.

    Texts sharing words land close together, which is enough for lexical
    retrieval without model weights.
    """

    def __init__(self, dimension: int = HASH_DIMENSION) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    @property
    def model_name(self) -> str:
        return f"hashing-{self.dimension}"

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        return _timed(self.model_name, texts, lambda items: [self._embed(str(text)) for text in items])

    def _embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:8], "big") % self.dimension
            vector[bucket] += 1.0 if digest[8] & 1 else -1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]


class SentenceTransformerEmbedder:
    """Lazy wrapper around a ``SentenceTransformer`` model."""

    def __init__(self, model_name_or_path: str = DEFAULT_MODEL_NAME, *, device: Optional[str] = None) -> None:
        self._model_path = model_name_or_path
        self._device = device
        self._model: Any = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_path

    def _ensure_loaded(self) -> Any:
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self._model_path, device=self._device)
                except Exception as error:
                    raise IndexBuildError(
                        f"Failed to initialise sentence-transformers model {self._model_path!r}", cause=error
                    ) from error
        return self._model

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        model = self._ensure_loaded()
        return _timed(
            self.model_name,
            texts,
            lambda items: model.encode(
                list(items),
                convert_to_numpy=True,
                show_progress_bar=False,
                normalize_embeddings=True,
            ).tolist(),
        )


def build_embedder(settings: PipelineSettings) -> Embedder:
    backend = settings.embedding_backend
    if backend == "hash":
        return HashingEmbedder()
    if backend in {"sentence-transformers", "sentence_transformers"}:
        return SentenceTransformerEmbedder(settings.embedding_model_path)
    raise ValueError(f"Unsupported EMBEDDING_BACKEND: {backend!r}")


__all__ = ["Embedder", "HashingEmbedder", "SentenceTransformerEmbedder", "build_embedder"]
