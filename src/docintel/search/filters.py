"""JSON attribute filters: ``{"@lte": {"page_number": 3}}`` and friends.

Filters are parsed once into a small tree with negations pushed down to the
comparisons, then compiled either to an in-process predicate or to a Chroma
``where`` clause. Both compilations therefore agree on every entry.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Collection, Dict, List, Mapping, Optional, Set, Tuple, Union

from docintel.errors import QueryError

_COMPARISONS: Dict[str, str] = {
    "@eq": "eq",
    "@ne": "ne",
    "@gt": "gt",
    "@gte": "gte",
    "@lt": "lt",
    "@lte": "lte",
    "@in": "in",
    "@nin": "nin",
}
_NEGATED = {"eq": "ne", "ne": "eq", "gt": "lte", "lte": "gt", "gte": "lt", "lt": "gte", "in": "nin", "nin": "in"}


@dataclass(frozen=True, slots=True)
class Comparison:
    op: str
    field: str
    value: Any


@dataclass(frozen=True, slots=True)
class AllOf:
    items: Tuple["FilterNode", ...]


@dataclass(frozen=True, slots=True)
class AnyOf:
    items: Tuple["FilterNode", ...]


FilterNode = Union[Comparison, AllOf, AnyOf]


def parse_filter(raw: Optional[Mapping[str, Any]], attributes: Optional[Collection[str]] = None) -> Optional[FilterNode]:
    """Parse a filter, checking fields against ``attributes`` when given.

    An empty or missing filter parses to ``None`` (match everything).
    """

    if raw is None or (isinstance(raw, Mapping) and not raw):
        return None
    return _parse(raw, attributes, negate=False)


def _single_item(raw: Any, what: str) -> Tuple[str, Any]:
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise QueryError(f"{what} must be an object with exactly one key, got {raw!r}")
    return next(iter(raw.items()))


def _parse(raw: Any, attributes: Optional[Collection[str]], *, negate: bool) -> FilterNode:
    operator, operand = _single_item(raw, "Filter clause")
    if operator in ("@and", "@or"):
        if not isinstance(operand, list) or not operand:
            raise QueryError(f"{operator} expects a non-empty list of clauses")
        items = tuple(_parse(item, attributes, negate=negate) for item in operand)
        conjunctive = (operator == "@and") != negate
        return AllOf(items) if conjunctive else AnyOf(items)
    if operator == "@not":
        return _parse(operand, attributes, negate=not negate)

    op = _COMPARISONS.get(operator)
    if op is None:
        raise QueryError(f"Unsupported filter operator {operator!r}")
    field, value = _single_item(operand, f"Operand of {operator}")
    if attributes is not None and field not in attributes:
        raise QueryError(f"Unknown filter attribute {field!r}; expected one of {sorted(attributes)}")
    if op in ("in", "nin"):
        if not isinstance(value, (list, tuple)):
            raise QueryError(f"{operator} expects a list of values for {field!r}")
        value = tuple(value)
    elif isinstance(value, (list, tuple, dict)) or value is None:
        raise QueryError(f"{operator} expects a scalar value for {field!r}")
    return Comparison(_NEGATED[op] if negate else op, field, value)


_PREDICATES: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "gt": lambda actual, expected: actual > expected,
    "gte": lambda actual, expected: actual >= expected,
    "lt": lambda actual, expected: actual < expected,
    "lte": lambda actual, expected: actual <= expected,
    "in": lambda actual, expected: actual in expected,
    "nin": lambda actual, expected: actual not in expected,
}


def matches(node: Optional[FilterNode], attributes: Mapping[str, Any]) -> bool:
    """Evaluate ``node`` against one entry; a missing attribute never matches."""

    if node is None:
        return True
    if isinstance(node, AllOf):
        return all(matches(item, attributes) for item in node.items)
    if isinstance(node, AnyOf):
        return any(matches(item, attributes) for item in node.items)
    actual = attributes.get(node.field)
    if actual is None:
        return False
    try:
        return bool(_PREDICATES[node.op](actual, node.value))
    except TypeError:
        return False


def to_chroma_where(node: Optional[FilterNode]) -> Optional[Dict[str, Any]]:
    if node is None:
        return None
    if isinstance(node, Comparison):
        value = list(node.value) if node.op in ("in", "nin") else node.value
        return {node.field: {f"${node.op}": value}}
    clauses: List[Dict[str, Any]] = [clause for clause in map(to_chroma_where, node.items) if clause]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and" if isinstance(node, AllOf) else "$or": clauses}


def referenced_fields(node: Optional[FilterNode]) -> Set[str]:
    if node is None:
        return set()
    if isinstance(node, Comparison):
        return {node.field}
    fields: Set[str] = set()
    for item in node.items:
        fields |= referenced_fields(item)
    return fields


def conjuncts(node: Optional[FilterNode]) -> List[FilterNode]:
    """Top-level AND terms of ``node`` (flattened)."""

    if node is None:
        return []
    if isinstance(node, AllOf):
        terms: List[FilterNode] = []
        for item in node.items:
            terms.extend(conjuncts(item))
        return terms
    return [node]


__all__ = [
    "AllOf",
    "AnyOf",
    "Comparison",
    "FilterNode",
    "conjuncts",
    "matches",
    "parse_filter",
    "referenced_fields",
    "to_chroma_where",
]
