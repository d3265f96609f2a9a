"""
Integration tests -- full service pipeline with live SQL execution.

Tests the complete ask() flow end-to-end: prompt → keyword generator → SQL →
validation → DuckDB → rows → chart.  The ``sessions`` table is seeded into an
in-memory DuckDB database with dates in mixed string formats.
"""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from src.copilot.service import CopilotResult, ask
from src.db.executor import SQLAlchemyEngine
from src.governance.semantic_loader import load_registry

_DDL = """
CREATE TABLE sessions (
    session_id VARCHAR,
    user_id VARCHAR,
    session_date VARCHAR,
    traffic_source VARCHAR,
    device_type VARCHAR,
    country VARCHAR,
    max_lifecycle_stage VARCHAR,
    is_paying_customer BOOLEAN,
    session_revenue DECIMAL(12,2),
    interest_events BIGINT,
    trial_events BIGINT,
    session_duration_seconds INTEGER
)
"""

_ROWS = """
INSERT INTO sessions VALUES
    ('s1', 'u1', '2024-01-15', 'organic', 'mobile',  'US', 'interest',   false, 10.00, 2, 0, 45),
    ('s2', 'u2', '01/16/2024', 'organic', 'desktop', 'DE', 'trial',      true,  25.50, 5, 1, 320),
    ('s3', 'u1', '2024/01/17', 'email',   'mobile',  'US', 'activation', true,  40.00, 1, 2, 900),
    ('s4', 'u3', '2024-01-15', 'email',   'tablet',  'FR', 'awareness',  false,  0.00, 0, 0, 30)
"""


@pytest.fixture(scope="module")
def engine():
    eng = create_engine("duckdb:///:memory:", poolclass=StaticPool)
    with eng.begin() as conn:
        conn.execute(text(_DDL))
        conn.execute(text(_ROWS))
    yield SQLAlchemyEngine(eng)
    eng.dispose()


@pytest.fixture(scope="module")
def registry():
    return load_registry()


def _ask(prompt: str, registry, engine) -> CopilotResult:
    return asyncio.run(ask(prompt, "sessions", registry=registry, engine=engine))


# ── End-to-end ───────────────────────────────────────────

def test_ask_returns_real_rows(registry, engine):
    result = _ask("total revenue by traffic source", registry, engine)
    assert result.success is True
    by_source = {r["Traffic Source"]: r["total_revenue"] for r in result.rows}
    assert by_source == {"organic": 35.5, "email": 40.0}
    assert result.chart.type == "pie"


def test_mixed_date_formats_are_coerced_and_ordered(registry, engine):
    result = _ask("session count by session date", registry, engine)
    assert result.success is True
    dates = [r["Session Date"] for r in result.rows]
    assert [d[:10] for d in dates] == ["2024-01-15", "2024-01-16", "2024-01-17"]
    assert result.rows[0]["session_count"] == 2
    assert 'ORDER BY "Session Date" ASC' in result.sql
    assert result.chart.type == "line"


def test_funnel_query(registry, engine):
    result = _ask("unique visitors by lifecycle stage", registry, engine)
    assert result.success is True
    assert result.visualization.archetype == "funnel"
    assert result.chart.type == "funnel"


def test_formula_measure_executes(registry, engine):
    result = _ask("trial signup rate by device type", registry, engine)
    assert result.success is True
    rates = {r["Device Type"]: r["trial_signup_rate"] for r in result.rows}
    assert rates["desktop"] == 100.0
    assert rates["tablet"] == 0.0


def test_transformation_dimension_executes(registry, engine):
    result = _ask("session count by session length", registry, engine)
    counts = {r["Session Length"]: r["session_count"] for r in result.rows}
    assert counts == {"short": 2, "medium": 1, "long": 1}


def test_unmatched_prompt_exhausts(registry, engine):
    result = _ask("what is the weather like", registry, engine)
    assert result.success is False
    assert result.error.cause == "execution"
    assert result.error.last_error_kind == "no_sql"
