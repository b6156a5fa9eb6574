"""Semantic view definitions and their versioned registry.

A semantic view maps business names (``banks.NAME``, ``performance.avg_roa``)
to SQL expressions over aliased physical tables, plus the join paths between
those tables. Definitions are plain data, validated when registered.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from docintel.errors import NotFoundError, QueryError

LOGGER = logging.getLogger(__name__)

_IDENTIFIER = r"[A-Za-z_][A-Za-z0-9_]*"
_QUALIFIED_RE = re.compile(rf"^({_IDENTIFIER})\.({_IDENTIFIER})$")
_REFERENCE_RE = re.compile(rf"(?<![\w.])({_IDENTIFIER})\s*\.\s*({_IDENTIFIER})")
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")


def expression_references(expr: str) -> List[Tuple[str, str]]:
    """``(alias, column)`` pairs referenced by a SQL expression.

    Quoted string literals are ignored, so ``'Total Assets'`` never reads as
    a reference.
    """

    return _REFERENCE_RE.findall(_STRING_LITERAL_RE.sub("''", expr))


class LogicalTable(BaseModel):
    alias: str
    table: str = Field(description="Physical table, optionally qualified as database.schema.table")
    primary_key: List[str] = Field(default_factory=list)
    synonyms: List[str] = Field(default_factory=list)
    comment: Optional[str] = None

    @property
    def physical_name(self) -> str:
        return self.table.split(".")[-1]

    @property
    def physical_schema(self) -> Optional[str]:
        """Schema part of the qualified name; a database qualifier is left to the connection."""

        parts = self.table.split(".")
        return parts[-2] if len(parts) >= 2 else None


class Relationship(BaseModel):
    """``table (columns) REFERENCES references (referenced_columns)``."""

    name: str
    table: str
    columns: List[str]
    references: str
    referenced_columns: List[str] = Field(default_factory=list)


class SemanticField(BaseModel):
    name: str
    expr: str
    synonyms: List[str] = Field(default_factory=list)
    comment: Optional[str] = None

    @property
    def table_alias(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def short_name(self) -> str:
        return self.name.split(".", 1)[1]


class SemanticView(BaseModel):
    name: str
    comment: Optional[str] = None
    tables: List[LogicalTable]
    relationships: List[Relationship] = Field(default_factory=list)
    facts: List[SemanticField] = Field(default_factory=list)
    dimensions: List[SemanticField] = Field(default_factory=list)
    metrics: List[SemanticField] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "SemanticView":
        aliases: Set[str] = set()
        for table in self.tables:
            if not re.fullmatch(_IDENTIFIER, table.alias):
                raise ValueError(f"Invalid table alias {table.alias!r}")
            if table.alias in aliases:
                raise ValueError(f"Duplicate table alias {table.alias!r}")
            aliases.add(table.alias)
        if not aliases:
            raise ValueError("A semantic view needs at least one table")

        tables = {table.alias: table for table in self.tables}
        relationship_names: Set[str] = set()
        for relationship in self.relationships:
            if relationship.name in relationship_names:
                raise ValueError(f"Duplicate relationship {relationship.name!r}")
            relationship_names.add(relationship.name)
            for alias in (relationship.table, relationship.references):
                if alias not in aliases:
                    raise ValueError(f"Relationship {relationship.name!r} uses undeclared table {alias!r}")
            if not relationship.columns:
                raise ValueError(f"Relationship {relationship.name!r} declares no columns")
            if not relationship.referenced_columns:
                relationship.referenced_columns = list(tables[relationship.references].primary_key)
            if len(relationship.referenced_columns) != len(relationship.columns):
                raise ValueError(
                    f"Relationship {relationship.name!r} joins {len(relationship.columns)} columns "
                    f"to {len(relationship.referenced_columns)}"
                )

        names: Set[str] = set()
        for kind, fields in (("fact", self.facts), ("dimension", self.dimensions), ("metric", self.metrics)):
            for item in fields:
                match = _QUALIFIED_RE.match(item.name)
                if not match:
                    raise ValueError(f"{kind} name {item.name!r} must look like alias.NAME")
                if match.group(1) not in aliases:
                    raise ValueError(f"{kind} {item.name!r} belongs to undeclared table {match.group(1)!r}")
                if item.name in names:
                    raise ValueError(f"Duplicate field name {item.name!r}")
                names.add(item.name)
                for alias, _ in expression_references(item.expr):
                    if alias not in aliases:
                        raise ValueError(f"{kind} {item.name!r} references undeclared table {alias!r}")
        return self

    @property
    def table_map(self) -> Dict[str, LogicalTable]:
        return {table.alias: table for table in self.tables}

    def _lookup(self, name: str, fields: Iterable[SemanticField], kind: str) -> SemanticField:
        candidates = list(fields)
        for item in candidates:
            if item.name == name:
                return item
        lowered = name.lower()
        matches = [
            item for item in candidates if item.name.lower() == lowered or item.short_name.lower() == lowered
        ]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise QueryError(
                f"{kind} {name!r} is ambiguous in view {self.name!r}: {sorted(item.name for item in matches)}"
            )
        raise QueryError(f"Unknown {kind} {name!r} in view {self.name!r}")

    def resolve_dimension(self, name: str) -> SemanticField:
        """Resolve a dimension (or row-level fact) by qualified or short name."""

        return self._lookup(name, [*self.dimensions, *self.facts], "dimension")

    def resolve_metric(self, name: str) -> SemanticField:
        return self._lookup(name, self.metrics, "metric")

    def is_metric(self, item: SemanticField) -> bool:
        return any(item.name == metric.name for metric in self.metrics)

    def resolve_any(self, name: str) -> SemanticField:
        return self._lookup(name, [*self.dimensions, *self.facts, *self.metrics], "field")

    def describe(self) -> Dict[str, object]:
        """Summary of the view for listings and introspection."""

        return {
            "name": self.name,
            "comment": self.comment,
            "tables": [table.alias for table in self.tables],
            "dimensions": [item.name for item in self.dimensions],
            "facts": [item.name for item in self.facts],
            "metrics": [item.name for item in self.metrics],
        }


class SemanticViewRegistry:
    """Versioned, thread-safe registry of semantic views keyed by name."""

    def __init__(self) -> None:
        self._views: Dict[str, List[SemanticView]] = {}
        self._lock = threading.Lock()

    def register(self, view: Union[SemanticView, Mapping[str, object]]) -> int:
        """Validate and store ``view``; return its version number (1-based)."""

        if not isinstance(view, SemanticView):
            view = SemanticView.model_validate(view)
        key = view.name.upper()
        with self._lock:
            versions = self._views.setdefault(key, [])
            versions.append(view)
            version = len(versions)
        LOGGER.info("Registered semantic view %s version %s", view.name, version)
        return version

    def get(self, name: str, version: Optional[int] = None) -> SemanticView:
        with self._lock:
            versions = self._views.get(name.upper())
            if not versions:
                raise NotFoundError(f"Semantic view {name!r} is not registered")
            if version is None:
                return versions[-1]
            if not 1 <= version <= len(versions):
                raise NotFoundError(f"Semantic view {name!r} has no version {version}")
            return versions[version - 1]

    def versions(self, name: str) -> List[int]:
        with self._lock:
            return list(range(1, len(self._views.get(name.upper(), [])) + 1))

    def names(self) -> List[str]:
        with self._lock:
            return sorted(versions[-1].name for versions in self._views.values())

    def load_directory(self, path: Union[str, Path]) -> List[str]:
        """Register every ``*.json`` definition in ``path`` (sorted by file name)."""

        directory = Path(path)
        if not directory.is_dir():
            raise NotFoundError(f"Semantic view directory {directory} does not exist")
        loaded: List[str] = []
        for file_path in sorted(directory.glob("*.json")):
            try:
                payload = json.loads(file_path.read_text(encoding="utf-8"))
                view = SemanticView.model_validate(payload)
            except (json.JSONDecodeError, ValidationError) as error:
                raise ValueError(f"Invalid semantic view definition in {file_path}: {error}") from error
            self.register(view)
            loaded.append(view.name)
        return loaded


__all__ = [
    "LogicalTable",
    "Relationship",
    "SemanticField",
    "SemanticView",
    "SemanticViewRegistry",
    "expression_references",
]
