"""
Integration tests -- SQL executor against an in-process DuckDB engine.
"""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from src.core.errors import ExecutionError
from src.db.connection import get_engine
from src.db.executor import SQLAlchemyEngine, execute_sql


@pytest.fixture(scope="module")
def engine():
    eng = create_engine("duckdb:///:memory:", poolclass=StaticPool)
    yield eng
    eng.dispose()


# ── Basic connectivity ───────────────────────────────────

def test_simple_select(engine):
    rows = execute_sql("SELECT 1 AS n", engine)
    assert rows == [{"n": 1}]


def test_multiple_rows(engine):
    rows = execute_sql("SELECT range AS n FROM range(1, 4) ORDER BY n", engine)
    assert [r["n"] for r in rows] == [1, 2, 3]


def test_colon_is_not_a_bind_parameter(engine):
    rows = execute_sql("SELECT '10:30' AS t", engine)
    assert rows == [{"t": "10:30"}]


# ── Failures ─────────────────────────────────────────────

def test_missing_table_raises_execution_error(engine):
    with pytest.raises(ExecutionError) as exc_info:
        execute_sql("SELECT * FROM no_such_table", engine)
    assert exc_info.value.sql == "SELECT * FROM no_such_table"


# ── Serialisation ────────────────────────────────────────

def test_decimal_serialised_to_float(engine):
    rows = execute_sql("SELECT CAST(3.14 AS DECIMAL(5,2)) AS val", engine)
    assert isinstance(rows[0]["val"], float)
    assert abs(rows[0]["val"] - 3.14) < 0.001


def test_date_serialised_to_iso(engine):
    rows = execute_sql("SELECT DATE '2024-01-15' AS d", engine)
    assert rows[0]["d"] == "2024-01-15"


def test_timestamp_serialised_to_iso(engine):
    rows = execute_sql("SELECT TIMESTAMP '2024-01-15 10:30:00' AS ts", engine)
    assert rows[0]["ts"].startswith("2024-01-15T10:30:00")


def test_oversized_bigint_becomes_float(engine):
    rows = execute_sql("SELECT CAST(1152921504606846976 AS BIGINT) AS big", engine)
    assert isinstance(rows[0]["big"], float)


# ── Async adapter ────────────────────────────────────────

def test_async_engine_adapter(engine):
    adapter = SQLAlchemyEngine(engine)
    rows = asyncio.run(adapter.execute("SELECT 2 AS n"))
    assert rows == [{"n": 2}]
    assert adapter.engine is engine


def test_get_engine_is_cached():
    assert get_engine("duckdb:///:memory:") is get_engine("duckdb:///:memory:")
