"""
Copilot service -- the generate -> validate -> execute -> correct loop.

State machine per run:

    GENERATING -> VALIDATING -> EXECUTING -> SUCCESS
         ^             |             |
         +-- RETRYING <+-------------+          (attempts left)
                       +-> FAILED               (budget spent)

  - At most 3 generation attempts.  Attempt 1 sends the user's prompt;
    later attempts send correction guidance followed by the original request.
  - Validation runs per the strategy: ``strict`` always, ``adaptive`` when the
    generator asks for it, ``fast`` never (and ``fast`` also never retries).
  - Engine failures, unsafe SQL and generator output without a SELECT are
    execution failures and are retried exactly like validation failures.
  - When the budget is spent, ``GenerationExhausted`` is raised; nothing
    partial is ever returned.

Each run pins the table's catalog and its registry version token at the
start; a ``register`` for that table during the run does not affect it.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

from src.copilot.chart_generator import ChartSpec, build_alternatives, build_chart_spec
from src.copilot.classifier import VisualizationSpec, categorize_dimension, classify
from src.copilot.planner import (
    SQLGenerator,
    build_execution_retry_prompt,
    build_retry_prompt,
    default_generator,
    extract_sql,
)
from src.core.config import get_settings
from src.core.errors import ExecutionError, GenerationExhausted, UnsafeSQLError
from src.core.logging import get_logger
from src.db.executor import SQLAlchemyEngine, sanitize_rows
from src.governance.semantic_loader import CatalogRegistry, SemanticCatalog, get_default_registry
from src.governance.sql_safety import check_sql_safety
from src.governance.validator import ParsedQuery, clause_start, parse_sql, validate_sql

logger = get_logger(__name__)

MAX_ATTEMPTS = 3

EXECUTION_ERROR = "execution_error"
NO_SQL = "no_sql"
UNSAFE_SQL = "unsafe_sql"


class RunState(str, Enum):
    GENERATING = "generating"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class ValidationStrategy(str, Enum):
    STRICT = "strict"
    ADAPTIVE = "adaptive"
    FAST = "fast"


class QueryEngine(Protocol):
    async def execute(self, sql: str) -> list[dict[str, Any]]: ...


@dataclass
class GenerationMetrics:
    """Observability only; never read by the control flow."""
    attempt_count: int = 0
    validation_used: bool = False
    initial_valid: bool | None = None
    final_valid: bool = False
    total_time_ms: int = 0
    error_kinds: list[str] = field(default_factory=list)
    execution_error: str | None = None
    catalog_version: int = 0
    states: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ResolvedQuery:
    table: str
    sql: str
    dimensions: tuple[str, ...]
    measures: tuple[str, ...]
    filters: tuple[str, ...] = ()
    order_by: tuple[str, ...] = ()
    limit: int | None = None
    catalog_version: int = 0


@dataclass(frozen=True)
class GenerationResult:
    resolved_query: ResolvedQuery
    rows: list[dict[str, Any]]
    metrics: GenerationMetrics


# ── Helpers ─────────────────────────────────────────────

def _transition(metrics: GenerationMetrics, state: RunState, attempt: int) -> None:
    metrics.states.append(state.value)
    logger.info("Generation attempt=%d state=%s", attempt, state.value)


def _should_validate(strategy: ValidationStrategy, generator: SQLGenerator) -> bool:
    if strategy is ValidationStrategy.STRICT:
        return True
    if strategy is ValidationStrategy.ADAPTIVE:
        return bool(getattr(generator, "requires_validation", True))
    return False


def _order_target(parsed: ParsedQuery, catalog: SemanticCatalog) -> str | None:
    """ORDER BY target for the first temporal dimension: its alias, or its SELECT position."""
    for position, item in enumerate(parsed.select_items, start=1):
        if item.is_measure or categorize_dimension(item.output_name, catalog) != "temporal":
            continue
        if item.alias:
            return '"' + item.alias.replace('"', '""') + '"'
        return str(position)
    return None


def ensure_temporal_order(sql: str, parsed: ParsedQuery | None, catalog: SemanticCatalog) -> str:
    """Add ``ORDER BY <temporal dim> ASC`` (before LIMIT) when a time query has no ORDER BY.

    Aliased dimensions are ordered by their quoted alias, unaliased
    expressions by their position in the SELECT list.
    """
    if parsed is None or parsed.order_by:
        return sql
    target = _order_target(parsed, catalog)
    if target is None:
        return sql
    order = f"ORDER BY {target} ASC"
    limit_at = clause_start(sql, "limit")
    if limit_at is None:
        return f"{sql}\n{order}"
    return f"{sql[:limit_at].rstrip()}\n{order}\n{sql[limit_at:]}"


def _resolved(sql: str, parsed: ParsedQuery | None, catalog: SemanticCatalog, version: int) -> ResolvedQuery:
    if parsed is None:
        return ResolvedQuery(table=catalog.table, sql=sql, dimensions=(), measures=(), catalog_version=version)
    return ResolvedQuery(
        table=parsed.table,
        sql=sql,
        dimensions=parsed.dimensions,
        measures=parsed.measures,
        filters=parsed.filters,
        order_by=parsed.order_by,
        limit=parsed.limit,
        catalog_version=version,
    )


# ── Orchestrator ────────────────────────────────────────

async def generate_and_execute(
    prompt: str,
    table_hint: str,
    *,
    registry: CatalogRegistry,
    generator: SQLGenerator,
    engine: QueryEngine,
    strategy: ValidationStrategy | str | None = None,
    max_attempts: int | None = None,
) -> GenerationResult:
    """Turn *prompt* into executed SQL against *table_hint*, retrying with corrections.

    Parameters
    ----------
    prompt : str
        The user's natural-language request.
    table_hint : str
        Registered table the query must target.
    registry : CatalogRegistry
        Source of the table's catalog (pinned for the whole run).
    generator : SQLGenerator
        External text-to-SQL collaborator.
    engine : QueryEngine
        External SQL engine; its rows are sanitized before being returned.
    strategy : ValidationStrategy | str, optional
        Defaults to ``Settings.validation_strategy``.
    max_attempts : int, optional
        Defaults to ``Settings.max_generation_attempts``; never more than 3.

    Raises
    ------
    GenerationExhausted
        When every attempt failed validation or execution.
    CatalogError
        When *table_hint* is not registered.
    """
    settings = get_settings()
    strategy = ValidationStrategy(strategy or settings.validation_strategy)
    budget = max(1, min(max_attempts or settings.max_generation_attempts, MAX_ATTEMPTS))
    if strategy is ValidationStrategy.FAST:
        budget = 1

    catalog, version = registry.snapshot(table_hint)
    validate = _should_validate(strategy, generator)
    metrics = GenerationMetrics(validation_used=validate, catalog_version=version)
    logger.info(
        "generate_and_execute | table=%s version=%d strategy=%s budget=%d",
        table_hint, version, strategy.value, budget,
    )

    t0 = time.perf_counter()
    current_prompt = prompt
    cause = ""
    last_kind = ""
    last_sql = ""
    last_error = ""

    for attempt in range(1, budget + 1):
        metrics.attempt_count = attempt
        _transition(metrics, RunState.GENERATING, attempt)
        failure: Exception
        try:
            raw = await generator.complete(current_prompt)
            sql = extract_sql(raw)
        except ExecutionError as exc:
            kind, failure = NO_SQL, exc
        except Exception as exc:
            # Generator failures of any type feed the retry loop
            kind, failure = EXECUTION_ERROR, exc
        else:
            last_sql = sql

            parsed: ParsedQuery | None
            if validate:
                _transition(metrics, RunState.VALIDATING, attempt)
                result = validate_sql(sql, catalog)
                if attempt == 1:
                    metrics.initial_valid = result.valid
                if not result.valid:
                    cause = "validation"
                    last_kind = result.errors[-1].kind
                    last_error = result.correction_guidance
                    metrics.error_kinds.extend(result.error_kinds)
                    current_prompt = build_retry_prompt(result.correction_guidance, prompt)
                    if attempt < budget:
                        _transition(metrics, RunState.RETRYING, attempt)
                    continue
                parsed = result.parsed
            else:
                parsed = parse_sql(sql, catalog)

            ordered = ensure_temporal_order(sql, parsed, catalog)
            if ordered != sql:
                sql, parsed = ordered, parse_sql(ordered, catalog)
            _transition(metrics, RunState.EXECUTING, attempt)
            violations = check_sql_safety(sql, catalog)
            if violations:
                kind, failure = UNSAFE_SQL, UnsafeSQLError(violations, sql=sql)
            else:
                try:
                    raw_rows = await engine.execute(sql)
                except Exception as exc:
                    # Engine failures of any type feed the retry loop
                    kind, failure = EXECUTION_ERROR, exc
                else:
                    if attempt == 1 and metrics.initial_valid is None:
                        metrics.initial_valid = True
                    metrics.final_valid = True
                    metrics.total_time_ms = int((time.perf_counter() - t0) * 1000)
                    _transition(metrics, RunState.SUCCESS, attempt)
                    return GenerationResult(
                        resolved_query=_resolved(sql, parsed, catalog, version),
                        rows=sanitize_rows(raw_rows),
                        metrics=metrics,
                    )

        cause = "execution"
        last_kind = kind
        last_error = str(failure)
        metrics.error_kinds.append(kind)
        metrics.execution_error = last_error
        if attempt == 1 and metrics.initial_valid is None:
            metrics.initial_valid = False
        logger.warning("Attempt %d failed during execution (%s): %s", attempt, kind, failure)
        current_prompt = build_execution_retry_prompt(last_error, catalog, prompt)
        if attempt < budget:
            _transition(metrics, RunState.RETRYING, attempt)

    metrics.total_time_ms = int((time.perf_counter() - t0) * 1000)
    _transition(metrics, RunState.FAILED, metrics.attempt_count)
    logger.error(
        "Generation exhausted | table=%s attempts=%d cause=%s kinds=%s",
        table_hint, metrics.attempt_count, cause, metrics.error_kinds,
    )
    raise GenerationExhausted(
        attempts=metrics.attempt_count,
        cause=cause,
        last_error_kind=last_kind,
        error_kinds=metrics.error_kinds,
        last_sql=last_sql,
        last_error=last_error,
        metrics=metrics,
    )


# ── End-to-end convenience ──────────────────────────────

class CopilotResult:
    def __init__(
        self,
        prompt: str,
        table: str,
        sql: str = "",
        rows: list[dict[str, Any]] | None = None,
        visualization: VisualizationSpec | None = None,
        chart: ChartSpec | None = None,
        alternatives: list[ChartSpec] | None = None,
        metrics: GenerationMetrics | None = None,
        error: GenerationExhausted | None = None,
        latency_ms: int = 0,
    ):
        self.prompt = prompt
        self.table = table
        self.sql = sql
        self.rows = rows or []
        self.visualization = visualization
        self.chart = chart
        self.alternatives = alternatives or []
        self.metrics = metrics
        self.error = error
        self.latency_ms = latency_ms

    @property
    def success(self) -> bool:
        return self.error is None


async def ask(
    prompt: str,
    table_hint: str,
    *,
    registry: CatalogRegistry | None = None,
    generator: SQLGenerator | None = None,
    engine: QueryEngine | None = None,
    strategy: ValidationStrategy | str | None = None,
) -> CopilotResult:
    """Prompt -> SQL -> rows -> chart.

    Generation exhaustion is reported on the result (``success`` is False,
    ``error`` carries the ``GenerationExhausted``) rather than raised.
    """
    t0 = time.perf_counter()
    registry = registry or get_default_registry()
    catalog = registry.get(table_hint)
    generator = generator or default_generator(catalog)
    engine = engine or SQLAlchemyEngine()
    logger.info("Copilot.ask | table=%s | prompt=%s", table_hint, prompt[:120])

    try:
        result = await generate_and_execute(
            prompt, table_hint,
            registry=registry, generator=generator, engine=engine, strategy=strategy,
        )
    except GenerationExhausted as exc:
        return CopilotResult(
            prompt=prompt,
            table=table_hint,
            sql=exc.last_sql,
            metrics=exc.metrics,
            error=exc,
            latency_ms=int((time.perf_counter() - t0) * 1000),
        )

    query = result.resolved_query
    visualization = classify(list(query.dimensions), list(query.measures), catalog)
    chart = build_chart_spec(visualization, result.rows, catalog)
    return CopilotResult(
        prompt=prompt,
        table=table_hint,
        sql=query.sql,
        rows=result.rows,
        visualization=visualization,
        chart=chart,
        alternatives=build_alternatives(visualization, result.rows, catalog),
        metrics=result.metrics,
        latency_ms=int((time.perf_counter() - t0) * 1000),
    )
