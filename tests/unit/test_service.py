"""
Unit tests -- copilot service: the generate -> validate -> execute -> correct loop.
Uses in-process fakes for the text-to-SQL generator and the SQL engine.
"""
import asyncio
import decimal

import pytest
import yaml

from src.copilot.service import (
    CopilotResult,
    GenerationResult,
    ValidationStrategy,
    ask,
    ensure_temporal_order,
    generate_and_execute,
)
from src.copilot.spec import QuerySpec
from src.copilot.sql_generator import compile_query
from src.core.config import get_settings
from src.core.errors import CatalogError, GenerationExhausted
from src.governance.semantic_loader import load_registry
from src.governance.validator import parse_sql


class FakeGenerator:
    """Replays canned responses; the last one repeats once the list runs out."""

    def __init__(self, responses, requires_validation=True):
        self.responses = list(responses)
        self.requires_validation = requires_validation
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        response = self.responses[min(len(self.prompts), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEngine:
    def __init__(self, rows=None, failures=()):
        self.rows = rows if rows is not None else []
        self.failures = list(failures)
        self.executed: list[str] = []

    async def execute(self, sql: str):
        self.executed.append(sql)
        if self.failures:
            raise self.failures.pop(0)
        return self.rows


@pytest.fixture(scope="module")
def registry():
    return load_registry()


@pytest.fixture(scope="module")
def sessions(registry):
    return registry.get("sessions")


@pytest.fixture(scope="module")
def good_sql(sessions):
    return compile_query(QuerySpec(dimensions=["Traffic Source"], measures=["total_revenue"]), sessions)


BAD_SQL = 'SELECT traffic_source AS "Traffic Source", AVG(session_revenue) AS total_revenue FROM sessions GROUP BY 1'
PROMPT = "total revenue by traffic source"
ROWS = [
    {"Traffic Source": "organic", "total_revenue": decimal.Decimal("120.50")},
    {"Traffic Source": "email", "total_revenue": decimal.Decimal("80.00")},
]


def _run(registry, generator, engine, **kwargs) -> GenerationResult:
    return asyncio.run(
        generate_and_execute(PROMPT, "sessions", registry=registry, generator=generator, engine=engine, **kwargs)
    )


# ── Success paths ────────────────────────────────────────

def test_first_attempt_success(registry, good_sql):
    engine = FakeEngine(ROWS)
    result = _run(registry, FakeGenerator([good_sql + ";"]), engine)

    assert result.rows[0] == {"Traffic Source": "organic", "total_revenue": 120.5}
    assert engine.executed == [good_sql]
    query = result.resolved_query
    assert query.table == "sessions"
    assert query.dimensions == ("Traffic Source",)
    assert query.measures == ("total_revenue",)
    assert query.catalog_version == registry.version_of("sessions")

    metrics = result.metrics
    assert metrics.attempt_count == 1
    assert metrics.validation_used is True
    assert metrics.initial_valid is True
    assert metrics.final_valid is True
    assert metrics.error_kinds == []
    assert metrics.total_time_ms >= 0
    assert metrics.states == ["generating", "validating", "executing", "success"]


def test_validation_failure_is_corrected(registry, good_sql):
    generator = FakeGenerator([BAD_SQL, good_sql])
    engine = FakeEngine(ROWS)
    result = _run(registry, generator, engine)

    assert result.metrics.attempt_count == 2
    assert result.metrics.initial_valid is False
    assert result.metrics.final_valid is True
    assert result.metrics.error_kinds == ["wrong_aggregation_type"]
    assert engine.executed == [good_sql]

    retry_prompt = generator.prompts[1]
    assert "[wrong_aggregation_type]" in retry_prompt
    assert "TABLE: sessions" in retry_prompt
    assert retry_prompt.endswith(f'ORIGINAL REQUEST: "{PROMPT}"')


def test_first_prompt_is_raw_user_prompt(registry, good_sql):
    generator = FakeGenerator([good_sql])
    _run(registry, generator, FakeEngine(ROWS))
    assert generator.prompts == [PROMPT]


def test_execution_failure_is_retried(registry, good_sql):
    generator = FakeGenerator([good_sql])
    engine = FakeEngine(ROWS, failures=[RuntimeError("Binder Error: column not found")])
    result = _run(registry, generator, engine)

    assert result.metrics.attempt_count == 2
    assert result.metrics.error_kinds == ["execution_error"]
    assert result.metrics.execution_error == "Binder Error: column not found"
    assert "Binder Error" in generator.prompts[1]
    assert generator.prompts[1].endswith(f'ORIGINAL REQUEST: "{PROMPT}"')
    assert len(engine.executed) == 2


def test_output_without_select_is_retried(registry, good_sql):
    result = _run(registry, FakeGenerator(["I am not sure what you mean.", good_sql]), FakeEngine(ROWS))
    assert result.metrics.attempt_count == 2
    assert result.metrics.error_kinds == ["no_sql"]


def test_unsafe_sql_never_executes(registry, good_sql):
    engine = FakeEngine(ROWS)
    generator = FakeGenerator(["SELECT COUNT(*) AS session_count FROM users", good_sql])
    result = _run(registry, generator, engine)
    assert result.metrics.error_kinds == ["unsafe_sql"]
    assert engine.executed == [good_sql]


def test_prose_before_sql_is_ignored(registry, good_sql):
    engine = FakeEngine(ROWS)
    generator = FakeGenerator(["I selected these columns:\n" + good_sql + ";"])
    result = _run(registry, generator, engine, strategy="strict")
    assert result.metrics.attempt_count == 1
    assert engine.executed == [good_sql]


def test_generator_exception_is_retried(registry, good_sql):
    generator = FakeGenerator([RuntimeError("rate limited"), good_sql])
    result = _run(registry, generator, FakeEngine(ROWS))
    assert result.metrics.attempt_count == 2
    assert result.metrics.error_kinds == ["execution_error"]
    assert result.metrics.execution_error == "rate limited"


def test_validator_bug_is_not_retried(registry, good_sql, monkeypatch):
    def broken(sql, catalog):
        raise ValueError("validator bug")

    monkeypatch.setattr("src.copilot.service.validate_sql", broken)
    engine = FakeEngine(ROWS)
    with pytest.raises(ValueError, match="validator bug"):
        _run(registry, FakeGenerator([good_sql]), engine, strategy="strict")
    assert engine.executed == []


# ── Exhaustion ───────────────────────────────────────────

def test_validation_exhaustion(registry):
    generator = FakeGenerator([BAD_SQL])
    engine = FakeEngine(ROWS)
    with pytest.raises(GenerationExhausted) as exc_info:
        _run(registry, generator, engine)

    exc = exc_info.value
    assert exc.attempts == 3
    assert exc.cause == "validation"
    assert exc.last_error_kind == "wrong_aggregation_type"
    assert exc.error_kinds == ["wrong_aggregation_type"] * 3
    assert exc.last_sql == BAD_SQL
    assert exc.metrics.final_valid is False
    assert exc.metrics.states[-1] == "failed"
    assert "more capable" in str(exc)
    assert len(generator.prompts) == 3
    assert engine.executed == []


def test_execution_exhaustion(registry, good_sql):
    engine = FakeEngine(ROWS, failures=[RuntimeError("boom")] * 5)
    with pytest.raises(GenerationExhausted) as exc_info:
        _run(registry, FakeGenerator([good_sql]), engine)
    assert exc_info.value.cause == "execution"
    assert exc_info.value.last_error_kind == "execution_error"
    assert len(engine.executed) == 3


def test_attempts_never_exceed_three(registry):
    generator = FakeGenerator([BAD_SQL])
    with pytest.raises(GenerationExhausted):
        _run(registry, generator, FakeEngine(), max_attempts=10)
    assert len(generator.prompts) == 3


def test_smaller_attempt_budget(registry):
    generator = FakeGenerator([BAD_SQL])
    with pytest.raises(GenerationExhausted) as exc_info:
        _run(registry, generator, FakeEngine(), max_attempts=2)
    assert exc_info.value.attempts == 2


def test_unknown_table_raises(registry, good_sql):
    with pytest.raises(CatalogError):
        asyncio.run(generate_and_execute(
            PROMPT, "weather", registry=registry, generator=FakeGenerator([good_sql]), engine=FakeEngine(),
        ))


# ── Strategies ───────────────────────────────────────────

def test_fast_skips_validation(registry):
    engine = FakeEngine(ROWS)
    result = _run(registry, FakeGenerator([BAD_SQL]), engine, strategy=ValidationStrategy.FAST)
    assert result.metrics.validation_used is False
    assert "validating" not in result.metrics.states
    assert engine.executed == [BAD_SQL]
    assert result.resolved_query.measures == ("total_revenue",)


def test_fast_never_retries(registry, good_sql):
    generator = FakeGenerator([good_sql])
    engine = FakeEngine(ROWS, failures=[RuntimeError("boom")])
    with pytest.raises(GenerationExhausted) as exc_info:
        _run(registry, generator, engine, strategy="fast")
    assert exc_info.value.attempts == 1
    assert exc_info.value.cause == "execution"
    assert len(generator.prompts) == 1


def test_adaptive_trusts_capable_generator(registry):
    engine = FakeEngine(ROWS)
    generator = FakeGenerator([BAD_SQL], requires_validation=False)
    result = _run(registry, generator, engine, strategy="adaptive")
    assert result.metrics.validation_used is False
    assert engine.executed == [BAD_SQL]


def test_strict_always_validates(registry):
    generator = FakeGenerator([BAD_SQL], requires_validation=False)
    with pytest.raises(GenerationExhausted):
        _run(registry, generator, FakeEngine(ROWS), strategy=ValidationStrategy.STRICT)


def test_default_strategy_from_settings(registry, good_sql):
    result = _run(registry, FakeGenerator([good_sql]), FakeEngine(ROWS))
    assert get_settings().validation_strategy == "adaptive"
    assert result.metrics.validation_used is True


# ── Temporal ordering ────────────────────────────────────

def test_temporal_query_gets_order_by(registry, sessions):
    sql = compile_query(QuerySpec(dimensions=["Session Date"], measures=["session_count"], limit=10), sessions)
    engine = FakeEngine([])
    result = _run(registry, FakeGenerator([sql]), engine)
    assert engine.executed[0].endswith('ORDER BY "Session Date" ASC\nLIMIT 10')
    assert result.resolved_query.order_by == ('"Session Date" ASC',)


def test_explicit_order_by_kept(sessions):
    sql = compile_query(
        QuerySpec(dimensions=["Session Date"], measures=["session_count"], order_by=["session_count DESC"]),
        sessions,
    )
    assert ensure_temporal_order(sql, parse_sql(sql, sessions), sessions) == sql


def test_non_temporal_query_untouched(sessions, good_sql):
    assert ensure_temporal_order(good_sql, parse_sql(good_sql, sessions), sessions) == good_sql


def test_temporal_order_without_limit(sessions):
    sql = compile_query(QuerySpec(dimensions=["Session Date"], measures=["session_count"]), sessions)
    assert ensure_temporal_order(sql, parse_sql(sql, sessions), sessions).endswith('\nORDER BY "Session Date" ASC')


def test_unaliased_temporal_expression_ordered_by_position(registry):
    sql = (
        "SELECT date_trunc('month', session_date::DATE), COUNT(*) AS session_count "
        "FROM sessions GROUP BY 1"
    )
    engine = FakeEngine([])
    _run(registry, FakeGenerator([sql]), engine, strategy="fast")
    assert engine.executed[0] == sql + "\nORDER BY 1 ASC"


def test_temporal_alias_with_quote_is_escaped(sessions):
    sql = 'SELECT session_date AS "Day ""1""", COUNT(*) AS session_count FROM sessions GROUP BY 1'
    ordered = ensure_temporal_order(sql, parse_sql(sql, sessions), sessions)
    assert ordered.endswith('\nORDER BY "Day ""1""" ASC')


# ── Catalog version pinning ──────────────────────────────

def test_run_pins_catalog_version(good_sql):
    registry = load_registry()
    pinned = registry.version_of("sessions")
    with open(get_settings().semantic_layer_dir + "/sessions.yml") as f:
        raw = yaml.safe_load(f)
    raw["dimensions"]["traffic_source"]["alias_name"] = "Channel"

    class ReRegisteringGenerator(FakeGenerator):
        async def complete(self, prompt: str) -> str:
            registry.register(raw)
            return await super().complete(prompt)

    result = _run(registry, ReRegisteringGenerator([good_sql]), FakeEngine(ROWS))
    assert result.resolved_query.catalog_version == pinned
    assert result.metrics.catalog_version == pinned
    assert registry.version_of("sessions") > pinned
    assert result.resolved_query.dimensions == ("Traffic Source",)


# ── ask() ────────────────────────────────────────────────

def test_ask_builds_chart(registry, good_sql):
    result = asyncio.run(ask(
        PROMPT, "sessions", registry=registry, generator=FakeGenerator([good_sql]), engine=FakeEngine(ROWS),
    ))
    assert isinstance(result, CopilotResult)
    assert result.success is True
    assert result.sql == good_sql
    assert result.visualization.archetype == "distribution"
    assert result.chart.type == "pie"
    assert [c.type for c in result.alternatives] == ["bar"]
    assert result.rows[1]["total_revenue"] == 80.0
    assert result.latency_ms >= 0


def test_ask_reports_exhaustion(registry):
    result = asyncio.run(ask(
        PROMPT, "sessions", registry=registry, generator=FakeGenerator([BAD_SQL]), engine=FakeEngine(ROWS),
    ))
    assert result.success is False
    assert isinstance(result.error, GenerationExhausted)
    assert result.sql == BAD_SQL
    assert result.rows == []
    assert result.chart is None
    assert result.metrics.attempt_count == 3


def test_ask_with_keyword_generator(registry):
    engine = FakeEngine(ROWS)
    result = asyncio.run(ask(PROMPT, "sessions", registry=registry, engine=engine))
    assert result.success is True
    assert '"Traffic Source"' in engine.executed[0]
    assert result.metrics.attempt_count == 1
