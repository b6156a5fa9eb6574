from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from docintel.config import PipelineSettings
from docintel.errors import NotFoundError, QueryError
from docintel.semantic import (
    DEFINITIONS_DIR,
    LogicalTable,
    SemanticQueryEngine,
    SemanticView,
    SemanticViewRegistry,
    load_registry,
)
from docintel.semantic.query import OrderBy
from docintel.semantic.views import expression_references


WAREHOUSE_TRANSLATE_MAP = {"CYBERSYN": None}

BANKING_VIEWS = [
    "BANKING_MARKET_INTELLIGENCE",
    "BANKING_PERFORMANCE_ANALYTICS",
    "BANKING_RISK_ANALYTICS",
]


def _minimal_view(**overrides):
    definition = {
        "name": "MINI",
        "tables": [
            {"alias": "banks", "table": "DB.SCHEMA.BANKS", "primary_key": ["ID"]},
            {"alias": "perf", "table": "DB.SCHEMA.PERF", "primary_key": ["ID", "DATE"]},
        ],
        "relationships": [{"name": "perf_to_bank", "table": "perf", "columns": ["ID"], "references": "banks"}],
        "dimensions": [{"name": "banks.NAME", "expr": "banks.NAME"}],
        "metrics": [{"name": "perf.total", "expr": "SUM(perf.VALUE)"}],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def views() -> SemanticViewRegistry:
    registry = SemanticViewRegistry()
    registry.load_directory(DEFINITIONS_DIR)
    return registry


@pytest.fixture
def engine(warehouse_engine, views) -> SemanticQueryEngine:
    return SemanticQueryEngine(warehouse_engine, registry=views, schema_translate_map=WAREHOUSE_TRANSLATE_MAP)


def test_bundled_definitions_load(views: SemanticViewRegistry) -> None:
    assert views.names() == BANKING_VIEWS
    performance = views.get("banking_performance_analytics")
    assert performance.table_map["banks"].physical_name == "FINANCIAL_INSTITUTION_ENTITIES"
    assert performance.table_map["banks"].physical_schema == "CYBERSYN"
    assert performance.relationships[0].referenced_columns == ["ID_RSSD"]
    described = performance.describe()
    assert "performance.avg_roa" in described["metrics"]
    assert "banks.NAME" in described["dimensions"]


def test_average_metric_grouped_by_dimension_with_filter(engine: SemanticQueryEngine) -> None:
    rows = engine.query(
        "BANKING_PERFORMANCE_ANALYTICS",
        dimensions=["banks.NAME"],
        metrics=["avg_roa"],
        filter={"@eq": {"STATE_ABBREVIATION": "CA"}},
        order_by=["avg_roa DESC"],
        limit=10,
    )

    assert rows == [
        {"NAME": "Alpha Bank", "avg_roa": pytest.approx(1.5)},
        {"NAME": "Beta Bank", "avg_roa": pytest.approx(0.5)},
    ]


def test_metric_filter_becomes_having(engine: SemanticQueryEngine) -> None:
    rows = engine.query(
        "BANKING_PERFORMANCE_ANALYTICS",
        dimensions=["NAME"],
        metrics=["avg_roa"],
        filter={"@gt": {"avg_roa": 1.0}},
        order_by=["NAME"],
    )

    assert [row["NAME"] for row in rows] == ["Alpha Bank", "Gamma Bank"]
    statement = engine.compile(
        "BANKING_PERFORMANCE_ANALYTICS",
        dimensions=["NAME"],
        metrics=["avg_roa"],
        filter={"@gt": {"avg_roa": 1.0}},
    )
    assert "HAVING" in str(statement)
    assert "LEFT OUTER JOIN" in str(statement)


def test_metrics_without_dimensions_and_limits(engine: SemanticQueryEngine) -> None:
    assert engine.query("BANKING_PERFORMANCE_ANALYTICS", metrics=["total_assets"]) == [
        {"total_assets": pytest.approx(450.0)}
    ]
    top = engine.query(
        "BANKING_PERFORMANCE_ANALYTICS",
        dimensions=["NAME"],
        metrics=["avg_roa"],
        order_by=[OrderBy("avg_roa", descending=True)],
        limit=1,
    )
    assert top == [{"NAME": "Gamma Bank", "avg_roa": pytest.approx(3.0)}]


def test_dimension_only_query_reads_from_the_dimension_table(engine: SemanticQueryEngine) -> None:
    rows = engine.query(
        "BANKING_PERFORMANCE_ANALYTICS",
        dimensions=["STATE_ABBREVIATION"],
        order_by=[{"field": "STATE_ABBREVIATION", "descending": False}],
    )

    assert rows == [{"STATE_ABBREVIATION": "CA"}, {"STATE_ABBREVIATION": "NY"}]


def test_colliding_short_names_are_prefixed_with_the_table(views: SemanticViewRegistry, warehouse_engine) -> None:
    engine = SemanticQueryEngine(warehouse_engine, registry=views)

    statement = engine.compile(
        "BANKING_MARKET_INTELLIGENCE",
        dimensions=["banks.IS_ACTIVE", "branches.IS_ACTIVE"],
    )

    assert [column.name for column in statement.selected_columns] == ["banks_IS_ACTIVE", "branches_IS_ACTIVE"]
    with pytest.raises(QueryError):
        engine.compile("BANKING_MARKET_INTELLIGENCE", dimensions=["IS_ACTIVE"])


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"metrics": ["avg_roa"], "limit": 0},
        {"metrics": ["no_such_metric"]},
        {"dimensions": ["avg_roa"]},
        {"dimensions": ["NAME"], "metrics": ["avg_roa"], "order_by": ["CATEGORY"]},
        {"dimensions": ["NAME"], "metrics": ["avg_roa"], "order_by": ["NAME SIDEWAYS"]},
        {
            "dimensions": ["NAME"],
            "metrics": ["avg_roa"],
            "filter": {"@or": [{"@eq": {"NAME": "Alpha Bank"}}, {"@gt": {"avg_roa": 1}}]},
        },
    ],
)
def test_invalid_queries_raise_query_error(engine: SemanticQueryEngine, kwargs) -> None:
    with pytest.raises(QueryError):
        engine.compile("BANKING_PERFORMANCE_ANALYTICS", **kwargs)


def test_database_errors_surface_as_query_errors(warehouse_engine, views) -> None:
    untranslated = SemanticQueryEngine(warehouse_engine, registry=views)

    with pytest.raises(QueryError):
        untranslated.query("BANKING_PERFORMANCE_ANALYTICS", metrics=["avg_roa"])


def test_expression_references_ignore_string_literals() -> None:
    expr = "SUM(CASE WHEN p.VARIABLE_NAME = 'x.y (ROA)' THEN p.VALUE END) / 1.5"

    assert expression_references(expr) == [("p", "VARIABLE_NAME"), ("p", "VALUE")]


def test_logical_table_names() -> None:
    assert LogicalTable(alias="t", table="DB.SCHEMA.T").physical_schema == "SCHEMA"
    assert LogicalTable(alias="t", table="SCHEMA.T").physical_schema == "SCHEMA"
    assert LogicalTable(alias="t", table="T").physical_schema is None
    assert LogicalTable(alias="t", table="DB.SCHEMA.T").physical_name == "T"


@pytest.mark.parametrize(
    "overrides",
    [
        {"tables": [{"alias": "banks", "table": "A"}, {"alias": "banks", "table": "B"}]},
        {"relationships": [{"name": "r", "table": "perf", "columns": ["ID"], "references": "ghosts"}]},
        {"relationships": [{"name": "r", "table": "perf", "columns": ["ID", "DATE"], "references": "banks"}]},
        {"dimensions": [{"name": "NAME", "expr": "banks.NAME"}]},
        {"dimensions": [{"name": "ghosts.NAME", "expr": "ghosts.NAME"}]},
        {"metrics": [{"name": "perf.total", "expr": "SUM(ghosts.VALUE)"}]},
        {"dimensions": [{"name": "perf.total", "expr": "perf.TOTAL"}]},
    ],
)
def test_invalid_definitions_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        SemanticView.model_validate(_minimal_view(**overrides))


def test_registry_keeps_every_version() -> None:
    registry = SemanticViewRegistry()

    assert registry.register(_minimal_view()) == 1
    assert registry.register(_minimal_view(comment="second")) == 2

    assert registry.versions("mini") == [1, 2]
    assert registry.get("MINI").comment == "second"
    assert registry.get("mini", version=1).comment is None
    with pytest.raises(NotFoundError):
        registry.get("MINI", version=3)
    with pytest.raises(NotFoundError):
        registry.get("UNKNOWN")


def test_load_registry_adds_custom_definitions(tmp_path) -> None:
    (tmp_path / "mini.json").write_text(json.dumps(_minimal_view()), encoding="utf-8")

    registry = load_registry(PipelineSettings(semantic_views_dir=str(tmp_path)))

    assert registry.names() == [*BANKING_VIEWS, "MINI"]


def test_load_directory_errors(tmp_path) -> None:
    registry = SemanticViewRegistry()
    with pytest.raises(NotFoundError):
        registry.load_directory(tmp_path / "missing")

    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        registry.load_directory(tmp_path)
