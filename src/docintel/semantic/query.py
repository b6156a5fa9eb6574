"""Compile semantic view queries to SQL with SQLAlchemy Core and run them."""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from docintel.errors import QueryError
from docintel.search.filters import AllOf, AnyOf, Comparison, FilterNode, conjuncts, parse_filter, referenced_fields
from docintel.telemetry import log_event

from .views import Relationship, SemanticField, SemanticView, SemanticViewRegistry, expression_references

LOGGER = logging.getLogger(__name__)

_OPERATORS = {
    "eq": lambda column, value: column == value,
    "ne": lambda column, value: column != value,
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
    "in": lambda column, value: column.in_(list(value)),
    "nin": lambda column, value: column.not_in(list(value)),
}


@dataclass(frozen=True, slots=True)
class OrderBy:
    field: str
    descending: bool = False

    @classmethod
    def parse(cls, value: Union[str, "OrderBy", Mapping[str, Any]]) -> "OrderBy":
        """Accept ``OrderBy``, ``{"field": ..., "descending": ...}`` or ``"name [ASC|DESC]"``."""

        if isinstance(value, OrderBy):
            return value
        if isinstance(value, Mapping):
            return cls(str(value["field"]), bool(value.get("descending", False)))
        parts = str(value).split()
        if len(parts) == 2 and parts[1].upper() in ("ASC", "DESC"):
            return cls(parts[0], parts[1].upper() == "DESC")
        if len(parts) != 1:
            raise QueryError(f"Invalid ORDER BY term {value!r}")
        return cls(parts[0])


@dataclass(frozen=True, slots=True)
class _Selected:
    field: SemanticField
    output: str
    is_metric: bool


def _output_names(fields: Sequence[Tuple[SemanticField, bool]]) -> List[_Selected]:
    counts: Dict[str, int] = {}
    for item, _ in fields:
        counts[item.short_name.lower()] = counts.get(item.short_name.lower(), 0) + 1
    selected: List[_Selected] = []
    for item, is_metric in fields:
        output = item.short_name
        if counts[item.short_name.lower()] > 1:
            output = f"{item.table_alias}_{item.short_name}"
        selected.append(_Selected(item, output, is_metric))
    return selected


def _join_plan(view: SemanticView, base: str, required: Set[str]) -> List[Tuple[str, str, Relationship]]:
    """Edges ``(parent, child, relationship)`` joining ``required`` to ``base``.

    Relationships are walked breadth-first in declaration order, so the first
    declared relationship wins when two paths have the same length.
    """

    parents: Dict[str, Tuple[str, Relationship]] = {}
    order: List[str] = [base]
    queue = deque([base])
    while queue:
        alias = queue.popleft()
        for relationship in view.relationships:
            if relationship.table == alias:
                neighbour = relationship.references
            elif relationship.references == alias:
                neighbour = relationship.table
            else:
                continue
            if neighbour == base or neighbour in parents:
                continue
            parents[neighbour] = (alias, relationship)
            order.append(neighbour)
            queue.append(neighbour)

    needed: Set[str] = set()
    for alias in required:
        if alias == base:
            continue
        if alias not in parents:
            raise QueryError(f"Table {alias!r} cannot be joined to {base!r} in view {view.name!r}")
        cursor = alias
        while cursor != base:
            needed.add(cursor)
            cursor = parents[cursor][0]
    return [(parents[alias][0], alias, parents[alias][1]) for alias in order if alias in needed]


class SemanticQueryEngine:
    """Answers dimension/metric queries against registered semantic views.

    ``schema_translate_map`` is handed to SQLAlchemy so a view written for
    one warehouse schema can run against another (``{"CYBERSYN": None}``
    maps the tables to the default schema).
    """

    def __init__(
        self,
        engine: Engine,
        *,
        registry: Optional[SemanticViewRegistry] = None,
        schema_translate_map: Optional[Mapping[Optional[str], Optional[str]]] = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.schema_translate_map = dict(schema_translate_map) if schema_translate_map else None

    def _view(self, view: Union[str, SemanticView]) -> SemanticView:
        if isinstance(view, SemanticView):
            return view
        if self.registry is None:
            raise QueryError("No semantic view registry configured")
        return self.registry.get(view)

    def compile(
        self,
        view: Union[str, SemanticView],
        *,
        dimensions: Sequence[str] = (),
        metrics: Sequence[str] = (),
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[Union[str, OrderBy, Mapping[str, Any]]] = (),
        limit: Optional[int] = None,
    ) -> sa.Select:
        semantic_view = self._view(view)
        if not dimensions and not metrics:
            raise QueryError("A semantic query needs at least one dimension or metric")
        if limit is not None and limit <= 0:
            raise QueryError("limit must be a positive integer")

        requested = [(semantic_view.resolve_dimension(name), False) for name in dimensions]
        requested += [(semantic_view.resolve_metric(name), True) for name in metrics]
        selected = _output_names(requested)
        by_output = {item.output.lower(): item for item in selected}

        where_node = parse_filter(filter)
        filter_fields: Dict[str, SemanticField] = {}
        for name in referenced_fields(where_node):
            chosen = by_output.get(name.lower())
            filter_fields[name] = chosen.field if chosen is not None else semantic_view.resolve_any(name)

        expressions = [item.field.expr for item in selected] + [item.expr for item in filter_fields.values()]
        required = {alias for expr in expressions for alias, _ in expression_references(expr)}
        required |= {item.field.table_alias for item in selected}
        base = next((item.field.table_alias for item in selected if item.is_metric), selected[0].field.table_alias)
        plan = _join_plan(semantic_view, base, required)

        tables = self._aliased_tables(semantic_view, {base, *(child for _, child, _ in plan)}, expressions)
        from_clause: sa.FromClause = tables[base]
        for parent, child, relationship in plan:
            from_clause = from_clause.join(
                tables[child], self._onclause(tables, relationship), isouter=True
            )

        labels = {item.output: sa.literal_column(item.field.expr).label(item.output) for item in selected}
        statement = sa.select(*labels.values()).select_from(from_clause)

        group_by = [sa.literal_column(item.field.expr) for item in selected if not item.is_metric]
        if group_by:
            statement = statement.group_by(*group_by)

        for term in conjuncts(where_node):
            kinds = {semantic_view.is_metric(filter_fields[name]) for name in referenced_fields(term)}
            if len(kinds) > 1:
                raise QueryError("A filter clause cannot mix metrics with dimensions or facts")
            clause = self._compile_filter(term, filter_fields)
            statement = statement.having(clause) if kinds == {True} else statement.where(clause)

        for term in map(OrderBy.parse, order_by):
            chosen = by_output.get(term.field.lower())
            if chosen is None:
                try:
                    target = semantic_view.resolve_any(term.field)
                except QueryError:
                    target = None
                chosen = next((item for item in selected if target is not None and item.field.name == target.name), None)
            if chosen is None:
                raise QueryError(f"ORDER BY {term.field!r} must name a selected dimension or metric")
            label = labels[chosen.output]
            statement = statement.order_by(label.desc() if term.descending else label.asc())

        if limit is not None:
            statement = statement.limit(limit)
        return statement

    def _aliased_tables(
        self, view: SemanticView, aliases: Iterable[str], expressions: Sequence[str]
    ) -> Dict[str, sa.FromClause]:
        columns: Dict[str, List[str]] = {}
        table_map = view.table_map

        def add(alias: str, column: str) -> None:
            names = columns.setdefault(alias, [])
            if column not in names:
                names.append(column)

        for alias in aliases:
            for column in table_map[alias].primary_key:
                add(alias, column)
        for relationship in view.relationships:
            for column in relationship.columns:
                add(relationship.table, column)
            for column in relationship.referenced_columns:
                add(relationship.references, column)
        for expr in expressions:
            for alias, column in expression_references(expr):
                add(alias, column)

        aliased: Dict[str, sa.FromClause] = {}
        for alias in aliases:
            logical = table_map[alias]
            physical = sa.table(
                logical.physical_name,
                *(sa.column(name) for name in columns.get(alias, [])),
                schema=logical.physical_schema,
            )
            aliased[alias] = physical.alias(alias)
        return aliased

    @staticmethod
    def _onclause(tables: Mapping[str, sa.FromClause], relationship: Relationship) -> sa.ColumnElement:
        source = tables[relationship.table]
        target = tables[relationship.references]
        pairs = zip(relationship.columns, relationship.referenced_columns)
        return sa.and_(*(source.c[left] == target.c[right] for left, right in pairs))

    def _compile_filter(self, node: FilterNode, fields: Mapping[str, SemanticField]) -> sa.ColumnElement:
        if isinstance(node, AllOf):
            return sa.and_(*(self._compile_filter(item, fields) for item in node.items))
        if isinstance(node, AnyOf):
            return sa.or_(*(self._compile_filter(item, fields) for item in node.items))
        assert isinstance(node, Comparison)
        column = sa.literal_column(fields[node.field].expr)
        return _OPERATORS[node.op](column, node.value)

    def query(
        self,
        view: Union[str, SemanticView],
        *,
        dimensions: Sequence[str] = (),
        metrics: Sequence[str] = (),
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[Union[str, OrderBy, Mapping[str, Any]]] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Run a semantic query and return one dict per result row."""

        semantic_view = self._view(view)
        statement = self.compile(
            semantic_view,
            dimensions=dimensions,
            metrics=metrics,
            filter=filter,
            order_by=order_by,
            limit=limit,
        )
        started = time.perf_counter()
        try:
            with self.engine.connect() as connection:
                if self.schema_translate_map is not None:
                    connection = connection.execution_options(schema_translate_map=self.schema_translate_map)
                rows = [dict(row._mapping) for row in connection.execute(statement)]
        except SQLAlchemyError as exc:
            LOGGER.exception("Semantic query on %s failed", semantic_view.name)
            raise QueryError(f"Semantic query on {semantic_view.name!r} failed", cause=exc) from exc
        log_event(
            LOGGER,
            "semantic.query",
            duration_ms=(time.perf_counter() - started) * 1000.0,
            details={
                "view": semantic_view.name,
                "dimensions": list(dimensions),
                "metrics": list(metrics),
                "rows": len(rows),
            },
        )
        return rows


__all__ = ["OrderBy", "SemanticQueryEngine"]
