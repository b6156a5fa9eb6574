from __future__ import annotations

import logging
from typing import Any, Dict, List

import pytest
import sqlalchemy as sa

from docintel.config import PipelineSettings, RetrySettings
from docintel.ingest.content_store import LocalContentStore
from docintel.logging_config import AUDIT_LOGGER_NAME
from docintel.search import HashingEmbedder, InMemoryVectorBackend, IndexRegistry
from docintel.storage import CorpusStore, create_engine_from_url

ROA = "Return on Average Assets (ROA)"
TOTAL_ASSETS = "Total Assets"


class _MessageHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.messages: List[Any] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.msg)


@pytest.fixture
def settings(tmp_path) -> PipelineSettings:
    return PipelineSettings(
        content_root=str(tmp_path / "content"),
        database_url="sqlite://",
        max_workers=2,
        retry=RetrySettings(timeout_seconds=0, max_attempts=2, backoff_seconds=0.0, backoff_max_seconds=0.0),
        index_wait_seconds=0.0,
    )


@pytest.fixture
def content_store(settings) -> LocalContentStore:
    return LocalContentStore(settings.content_root)


@pytest.fixture
def store() -> CorpusStore:
    return CorpusStore.from_url("sqlite://")


@pytest.fixture
def registry() -> IndexRegistry:
    return IndexRegistry(embedder=HashingEmbedder(), backend=InMemoryVectorBackend(), wait_seconds=0.0)


@pytest.fixture
def audit_messages():
    """Audit-trail records (dict messages) written while the test runs."""

    handler = _MessageHandler()
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        yield handler.messages
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)


@pytest.fixture
def warehouse_engine() -> sa.engine.Engine:
    """In-memory stand-in for the banking warehouse tables."""

    engine = create_engine_from_url("sqlite://")
    meta = sa.MetaData()
    entities = sa.Table(
        "FINANCIAL_INSTITUTION_ENTITIES",
        meta,
        sa.Column("ID_RSSD", sa.Integer, primary_key=True),
        sa.Column("NAME", sa.String(100)),
        sa.Column("STATE_ABBREVIATION", sa.String(2)),
        sa.Column("CATEGORY", sa.String(40)),
        sa.Column("IS_ACTIVE", sa.Boolean),
    )
    timeseries = sa.Table(
        "FINANCIAL_INSTITUTION_TIMESERIES",
        meta,
        sa.Column("ID_RSSD", sa.Integer),
        sa.Column("VARIABLE", sa.String(40)),
        sa.Column("VARIABLE_NAME", sa.String(100)),
        sa.Column("DATE", sa.String(10)),
        sa.Column("VALUE", sa.Float),
        sa.Column("UNIT", sa.String(10)),
    )
    meta.create_all(engine)

    banks: List[Dict[str, Any]] = [
        {"ID_RSSD": 1, "NAME": "Alpha Bank", "STATE_ABBREVIATION": "CA", "CATEGORY": "Bank", "IS_ACTIVE": True},
        {"ID_RSSD": 2, "NAME": "Beta Bank", "STATE_ABBREVIATION": "CA", "CATEGORY": "Bank", "IS_ACTIVE": True},
        {"ID_RSSD": 3, "NAME": "Gamma Bank", "STATE_ABBREVIATION": "NY", "CATEGORY": "Thrift", "IS_ACTIVE": True},
    ]
    series = [
        (1, ROA, "2024-03-31", 1.0),
        (1, ROA, "2024-06-30", 2.0),
        (2, ROA, "2024-06-30", 0.5),
        (3, ROA, "2024-06-30", 3.0),
        (1, TOTAL_ASSETS, "2024-06-30", 100.0),
        (2, TOTAL_ASSETS, "2024-06-30", 50.0),
        (3, TOTAL_ASSETS, "2024-06-30", 300.0),
    ]
    with engine.begin() as connection:
        connection.execute(sa.insert(entities), banks)
        connection.execute(
            sa.insert(timeseries),
            [
                {
                    "ID_RSSD": bank_id,
                    "VARIABLE": name[:8],
                    "VARIABLE_NAME": name,
                    "DATE": date,
                    "VALUE": value,
                    "UNIT": "USD" if name == TOTAL_ASSETS else "Percent",
                }
                for bank_id, name, date, value in series
            ],
        )
    return engine
