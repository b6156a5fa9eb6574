"""Semantic views over the banking warehouse tables."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from docintel.config import PipelineSettings

from .query import OrderBy, SemanticQueryEngine
from .views import LogicalTable, Relationship, SemanticField, SemanticView, SemanticViewRegistry

DEFINITIONS_DIR = Path(__file__).resolve().parent / "definitions"


def load_registry(settings: PipelineSettings, registry: Optional[SemanticViewRegistry] = None) -> SemanticViewRegistry:
    """Registry holding the bundled views plus any from ``semantic_views_dir``."""

    registry = registry or SemanticViewRegistry()
    registry.load_directory(DEFINITIONS_DIR)
    if settings.semantic_views_dir:
        registry.load_directory(settings.semantic_views_dir)
    return registry


__all__ = [
    "DEFINITIONS_DIR",
    "LogicalTable",
    "OrderBy",
    "Relationship",
    "SemanticField",
    "SemanticQueryEngine",
    "SemanticView",
    "SemanticViewRegistry",
    "load_registry",
]
