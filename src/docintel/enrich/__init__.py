"""Enrichment stage: table detection and structured table extraction."""
from __future__ import annotations

from typing import Optional

from docintel.config import PipelineSettings

from .classifier import (
    GenerativeClassifier,
    GenerativePrefilter,
    HeuristicTableClassifier,
    TableDetector,
    looks_tabular,
)
from .generation import (
    GenerationConfig,
    StaticTextGenerator,
    TextGenerator,
    TransformersTextGenerator,
)
from .tables import GenerativeTableExtractor, MarkdownTableExtractor, TableExtractor


def build_text_generator(settings: PipelineSettings) -> TextGenerator:
    if not settings.llm_model_path:
        raise ValueError("LLM_MODEL_PATH must be set to use the generative back-ends")
    return TransformersTextGenerator(
        GenerationConfig(model_path=settings.llm_model_path, max_tokens=settings.llm_max_tokens)
    )


def build_table_detector(
    settings: PipelineSettings, generator: Optional[TextGenerator] = None
) -> TableDetector:
    """Assemble the classifier and pre-filter selected by ``settings``."""

    backend = settings.classifier_backend
    if backend == "heuristic":
        heuristic = HeuristicTableClassifier()
        prefilter = heuristic if settings.prefilter_enabled else None
        return TableDetector(heuristic, prefilter, retry=settings.retry)
    if backend == "llm":
        generator = generator or build_text_generator(settings)
        prefilter = GenerativePrefilter(generator) if settings.prefilter_enabled else None
        return TableDetector(GenerativeClassifier(generator), prefilter, retry=settings.retry)
    raise ValueError(f"Unsupported classifier backend: {backend!r}")


def build_table_extractor(
    settings: PipelineSettings, generator: Optional[TextGenerator] = None
) -> TableExtractor:
    backend = settings.extractor_backend
    if backend == "markdown":
        return MarkdownTableExtractor()
    if backend == "llm":
        return GenerativeTableExtractor(generator or build_text_generator(settings), max_tokens=settings.llm_max_tokens)
    raise ValueError(f"Unsupported extractor backend: {backend!r}")


__all__ = [
    "GenerativeClassifier",
    "GenerativePrefilter",
    "GenerativeTableExtractor",
    "HeuristicTableClassifier",
    "MarkdownTableExtractor",
    "StaticTextGenerator",
    "TableDetector",
    "TextGenerator",
    "TransformersTextGenerator",
    "build_table_detector",
    "build_table_extractor",
    "build_text_generator",
    "looks_tabular",
]
