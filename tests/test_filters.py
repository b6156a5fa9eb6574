from __future__ import annotations

import pytest

from docintel.errors import QueryError
from docintel.search.filters import (
    AllOf,
    AnyOf,
    Comparison,
    conjuncts,
    matches,
    parse_filter,
    referenced_fields,
    to_chroma_where,
)

ATTRIBUTES = {"page_number", "page_title", "relative_path"}


def test_empty_filter_matches_everything() -> None:
    assert parse_filter(None) is None
    assert parse_filter({}) is None
    assert matches(None, {}) is True


def test_comparison_filter() -> None:
    node = parse_filter({"@lte": {"page_number": 3}}, ATTRIBUTES)

    assert node == Comparison("lte", "page_number", 3)
    assert matches(node, {"page_number": 3})
    assert not matches(node, {"page_number": 4})


def test_negation_is_pushed_down_to_comparisons() -> None:
    node = parse_filter({"@not": {"@and": [{"@eq": {"a": 1}}, {"@gt": {"b": 2}}]}})

    assert node == AnyOf((Comparison("ne", "a", 1), Comparison("lte", "b", 2)))
    assert matches(node, {"a": 2, "b": 5})
    assert not matches(node, {"a": 1, "b": 5})


def test_double_negation_and_set_membership() -> None:
    node = parse_filter({"@not": {"@not": {"@in": {"relative_path": ["a.md", "b.md"]}}}}, ATTRIBUTES)

    assert node == Comparison("in", "relative_path", ("a.md", "b.md"))
    assert matches(node, {"relative_path": "b.md"})
    assert parse_filter({"@not": {"@in": {"relative_path": ["a.md"]}}}) == Comparison(
        "nin", "relative_path", ("a.md",)
    )


def test_missing_attribute_never_matches() -> None:
    assert not matches(Comparison("ne", "page_title", "Intro"), {})
    assert not matches(Comparison("gt", "page_number", 3), {"page_number": "three"})


@pytest.mark.parametrize(
    "raw",
    [
        {"@lte": {"chunk_text": 3}},
        {"@between": {"page_number": [1, 2]}},
        {"@in": {"page_number": 3}},
        {"@eq": {"page_number": [1]}},
        {"@eq": {"page_number": 1}, "@ne": {"page_number": 2}},
        {"@and": []},
        {"@or": {"@eq": {"page_number": 1}}},
    ],
)
def test_malformed_filters_are_rejected(raw) -> None:
    with pytest.raises(QueryError):
        parse_filter(raw, ATTRIBUTES)


def test_chroma_where_translation() -> None:
    node = parse_filter({"@and": [{"@eq": {"page_title": "Intro"}}, {"@in": {"page_number": [1, 2]}}]})

    assert to_chroma_where(node) == {
        "$and": [{"page_title": {"$eq": "Intro"}}, {"page_number": {"$in": [1, 2]}}]
    }
    assert to_chroma_where(parse_filter({"@lte": {"page_number": 3}})) == {"page_number": {"$lte": 3}}
    assert to_chroma_where(None) is None


def test_conjuncts_and_referenced_fields() -> None:
    node = parse_filter(
        {"@and": [{"@eq": {"a": 1}}, {"@and": [{"@gt": {"b": 2}}, {"@or": [{"@eq": {"c": 3}}, {"@eq": {"d": 4}}]}]}]}
    )

    terms = conjuncts(node)

    assert terms[:2] == [Comparison("eq", "a", 1), Comparison("gt", "b", 2)]
    assert isinstance(terms[2], AnyOf)
    assert referenced_fields(node) == {"a", "b", "c", "d"}
    assert isinstance(parse_filter({"@and": [{"@eq": {"a": 1}}]}), AllOf)
