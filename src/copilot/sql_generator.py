"""
SQL Generator -- compiles an alias-based QuerySpec into a SELECT string.

Every column, expression and aggregation comes from the table's semantic
catalog; the generator never invents table references of its own.  It only
produces text: execution belongs to the caller's SQL engine.

Compilation rules:
  1. Dimensions  -> ``(transformation) AS "alias"`` or ``"table"."column" AS "alias"``
  2. Temporal fields ingested as strings are wrapped in a date-coercion COALESCE
  3. Aggregations -> ``AGG("table"."column") AS "alias"`` (``_count`` -> ``COUNT(*)``)
  4. Formulas    -> ``(formula sql) AS "alias"``, verbatim
  5. GROUP BY 1..N over the dimensions only
"""
from __future__ import annotations

import re

from src.copilot.spec import QuerySpec
from src.core.errors import CompileError, UnknownAlias
from src.core.logging import get_logger
from src.governance.semantic_loader import (
    COUNT_SENTINEL,
    Aggregation,
    Dimension,
    MeasureEntry,
    SemanticCatalog,
)

logger = get_logger(__name__)

# Tried in order after the native casts; first non-NULL parse wins
TEMPORAL_PARSE_FORMATS = ("%m/%d/%Y", "%d/%m/%Y", "%Y-%m-%d", "%Y/%m/%d", "%m-%d-%Y")

_AGG_FUNCTIONS = {
    "sum": "SUM",
    "avg": "AVG",
    "count": "COUNT",
    "max": "MAX",
    "min": "MIN",
}

_ORDER_RE = re.compile(r"^(?P<target>.+?)(?:\s+(?P<direction>ASC|DESC))?$", re.IGNORECASE | re.DOTALL)


# ── Identifier helpers ───────────────────────────────────

def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_table(table: str) -> str:
    """``main.sessions`` -> ``"main"."sessions"``."""
    return ".".join(quote_identifier(part) for part in table.split("."))


def column_ref(table: str, column: str) -> str:
    return f"{quote_table(table)}.{quote_identifier(column)}"


def temporal_cast(expr: str) -> str:
    """Coerce a string-ingested date column: native casts first, then each parse format."""
    attempts = [
        f"TRY_CAST({expr} AS TIMESTAMP)",
        f"TRY_CAST({expr} AS DATE)",
    ]
    attempts += [
        f"try_strptime(CAST({expr} AS VARCHAR), '{fmt}')"
        for fmt in TEMPORAL_PARSE_FORMATS
    ]
    return "COALESCE(" + ", ".join(attempts) + ")"


# ── Per-alias compilation ────────────────────────────────

def _dimension_sql(dim: Dimension, catalog: SemanticCatalog) -> str:
    if dim.transformation:
        return f"({dim.transformation}) AS {quote_identifier(dim.alias)}"

    ref = column_ref(catalog.table, dim.source)
    f = catalog.get_field(dim.source)
    if f is not None and f.category == "temporal" and f.ingest_type == "string":
        ref = temporal_cast(ref)
    return f"{ref} AS {quote_identifier(dim.alias)}"


def _measure_sql(entry: MeasureEntry, catalog: SemanticCatalog) -> str:
    alias = quote_identifier(entry.alias)
    if not isinstance(entry, Aggregation):
        return f"({entry.sql}) AS {alias}"

    if entry.source_field == COUNT_SENTINEL:
        return f"COUNT(*) AS {alias}"
    ref = column_ref(catalog.table, entry.source_field)
    if entry.type == "count_distinct":
        return f"COUNT(DISTINCT {ref}) AS {alias}"
    return f"{_AGG_FUNCTIONS[entry.type]}({ref}) AS {alias}"


def _order_sql(target: int | str, output_aliases: set[str]) -> str:
    if isinstance(target, int):
        return str(target)
    m = _ORDER_RE.match(target.strip())
    if m is None:
        return target.strip()
    name = m.group("target").strip()
    bare = name.strip('"')
    if bare in output_aliases:
        name = quote_identifier(bare)
    direction = m.group("direction")
    return f"{name} {direction.upper()}" if direction else name


# ── SQL builder ──────────────────────────────────────────

def compile_query(spec: QuerySpec, catalog: SemanticCatalog) -> str:
    """Build a SELECT for *spec* against *catalog*.

    Raises
    ------
    UnknownAlias
        If a dimension or measure alias is not in the catalog.
    CompileError
        If the spec requests neither dimensions nor measures.
    """
    if spec.is_empty:
        raise CompileError(f"QuerySpec for table '{catalog.table}' selects no dimensions or measures")

    select_parts: list[str] = []
    output_aliases: set[str] = set()

    for alias in spec.dimensions:
        dim = catalog.resolve_dimension(alias)
        if dim is None:
            raise UnknownAlias(alias, catalog.table, "dimension")
        select_parts.append(_dimension_sql(dim, catalog))
        output_aliases.add(dim.alias)

    for alias in spec.measures:
        entry = catalog.resolve_measure(alias)
        if entry is None:
            raise UnknownAlias(alias, catalog.table, "measure")
        select_parts.append(_measure_sql(entry, catalog))
        output_aliases.add(entry.alias)

    # ── Assemble ─────────────────────────────────────
    sql_lines: list[str] = ["SELECT"]
    sql_lines.append("  " + ",\n  ".join(select_parts))
    sql_lines.append(f"FROM {quote_table(catalog.table)}")

    if spec.filters:
        sql_lines.append("WHERE " + "\n  AND ".join(f"({f.strip()})" for f in spec.filters))

    if spec.dimensions:
        sql_lines.append("GROUP BY " + ", ".join(str(i) for i in range(1, len(spec.dimensions) + 1)))

    if spec.order_by:
        sql_lines.append("ORDER BY " + ", ".join(_order_sql(t, output_aliases) for t in spec.order_by))

    if spec.limit is not None:
        sql_lines.append(f"LIMIT {spec.limit}")

    sql = "\n".join(sql_lines)
    logger.info("Compiled SQL for table=%s:\n%s", catalog.table, sql)
    return sql
