"""
Validates SQL text against a table's semantic catalog.

This is a tolerant parser for a single flat
``SELECT ... FROM ... WHERE ... GROUP BY ... ORDER BY ... LIMIT`` statement.
Clause keywords and commas are only honoured outside quotes and outside
parentheses, which is all the structure such a statement needs.

Checks performed:
  1. Aggregate calls in SELECT reference physical fields, not aliases
  2. An aggregate written under a measure alias uses that alias' declared function
  3. Plain SELECT columns are physical fields (``CASE`` expressions always pass)
  4. GROUP BY entries are positions, SELECT aliases or physical fields
  5. Aggregate / computed SELECT expressions carry an ``AS`` alias
  6. No MySQL-style ``CURDATE()`` / ``NOW()`` calls

Problems are returned as ``ValidationError`` records, never raised, together
with a correction-guidance block meant to be fed back to the SQL generator.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from src.core.logging import get_logger
from src.governance.semantic_loader import (
    Aggregation,
    Dimension,
    SemanticCatalog,
)

logger = get_logger(__name__)

ALIAS_USED_AS_COLUMN = "alias_used_as_column"
WRONG_AGGREGATION_TYPE = "wrong_aggregation_type"
UNKNOWN_COLUMN = "unknown_column"
MISSING_ALIAS = "missing_alias"

# Listing cap per section in correction guidance
_GUIDANCE_LIMIT = 15


# ── Result types ─────────────────────────────────────────

@dataclass(frozen=True)
class ValidationError:
    kind: str
    offending_identifier: str
    human_message: str
    suggested_correction: str
    related_field_metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class SelectItem:
    expression: str
    alias: str | None
    output_name: str
    is_measure: bool


@dataclass(frozen=True)
class ParsedQuery:
    """Surface structure of a validated SELECT."""

    sql: str
    table: str
    select_items: tuple[SelectItem, ...]
    dimensions: tuple[str, ...]
    measures: tuple[str, ...]
    group_by: tuple[str, ...] = ()
    filters: tuple[str, ...] = ()
    order_by: tuple[str, ...] = ()
    limit: int | None = None


@dataclass
class ValidationResult:
    valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    correction_guidance: str = ""
    parsed: ParsedQuery | None = None

    @property
    def error_kinds(self) -> list[str]:
        return [e.kind for e in self.errors]


# ── Lexical helpers ──────────────────────────────────────

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)'
_QUALIFIED_IDENT_RE = re.compile(rf"^{_IDENT}(?:\s*\.\s*{_IDENT})*$")
_IDENT_PART_RE = re.compile(_IDENT)
_EXPLICIT_ALIAS_RE = re.compile(rf"^(?P<expr>.*?)\s+AS\s+(?P<alias>{_IDENT})\s*$", re.IGNORECASE | re.DOTALL)
_IMPLICIT_ALIAS_RE = re.compile(rf"^(?P<expr>.*\))\s+(?P<alias>{_IDENT})\s*$", re.DOTALL)
_LITERAL_RE = re.compile(r"^(?:-?\d+(?:\.\d+)?|'(?:[^']|'')*'|TRUE|FALSE|NULL)$", re.IGNORECASE)
_CASE_RE = re.compile(r"\bCASE\b", re.IGNORECASE)
_AGG_START_RE = re.compile(r"\b(SUM|AVG|MEAN|COUNT|MIN|MAX|MEDIAN|STDDEV|VARIANCE|ANY_VALUE)\s*\(", re.IGNORECASE)
_CAST_RE = re.compile(r"^(?:TRY_)?CAST\s*\((?P<inner>.*)\s+AS\s+[\w\s(),]+\)$", re.IGNORECASE | re.DOTALL)
_DISTINCT_RE = re.compile(r"^DISTINCT\s+", re.IGNORECASE)
_STAR_RE = re.compile(rf"^(?:{_IDENT}\s*\.\s*)*\*$")
_POSITION_RE = re.compile(r"^\d+$")
_RESERVED_WORDS = {"END", "ASC", "DESC", "AND", "OR", "NOT", "NULL", "THEN", "ELSE", "FROM"}

_CLAUSE_PATTERNS = {
    "select": re.compile(r"\bSELECT\b", re.IGNORECASE),
    "from": re.compile(r"\bFROM\b", re.IGNORECASE),
    "where": re.compile(r"\bWHERE\b", re.IGNORECASE),
    "group_by": re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE),
    "having": re.compile(r"\bHAVING\b", re.IGNORECASE),
    "order_by": re.compile(r"\bORDER\s+BY\b", re.IGNORECASE),
    "limit": re.compile(r"\bLIMIT\b", re.IGNORECASE),
}

_AGG_TYPES = {
    "sum": "sum",
    "avg": "avg",
    "mean": "avg",
    "count": "count",
    "min": "min",
    "max": "max",
}

# Non-DuckDB functions a generator tends to emit -> DuckDB replacement
_INVALID_FUNCTIONS = (
    (re.compile(r"\bCURDATE\s*\(\s*\)", re.IGNORECASE), "CURDATE()", "CURRENT_DATE"),
    (re.compile(r"\bNOW\s*\(\s*\)", re.IGNORECASE), "NOW()", "CURRENT_TIMESTAMP"),
)


def mask_literals(sql: str) -> str:
    """Blank out quoted content (same length) so keywords inside literals are ignored."""
    out: list[str] = []
    quote: str | None = None
    for ch in sql:
        if quote is None:
            if ch in ("'", '"'):
                quote = ch
            out.append(ch)
        elif ch == quote:
            quote = None
            out.append(ch)
        else:
            out.append("_")
    return "".join(out)


def _depths(masked: str) -> list[int]:
    depths: list[int] = []
    depth = 0
    for ch in masked:
        if ch == "(":
            depths.append(depth)
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
            depths.append(depth)
        else:
            depths.append(depth)
    return depths


def _find_top_level(pattern: re.Pattern, masked: str, depths: list[int], start: int = 0) -> re.Match | None:
    for m in pattern.finditer(masked, start):
        if depths[m.start()] == 0:
            return m
    return None


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split *text* on *sep* outside quotes and parentheses."""
    masked = mask_literals(text)
    depths = _depths(masked)
    parts: list[str] = []
    last = 0
    for i, ch in enumerate(masked):
        if ch == sep and depths[i] == 0:
            parts.append(text[last:i].strip())
            last = i + 1
    parts.append(text[last:].strip())
    return [p for p in parts if p]


def _matching_paren(masked: str, open_idx: int) -> int:
    depth = 0
    for i in range(open_idx, len(masked)):
        if masked[i] == "(":
            depth += 1
        elif masked[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def normalise_identifier(expr: str) -> str | None:
    """``"sessions"."Traffic Source"`` -> ``Traffic Source``; None for non-identifiers."""
    expr = expr.strip()
    if not expr or _LITERAL_RE.match(expr) or not _QUALIFIED_IDENT_RE.match(expr):
        return None
    last = _IDENT_PART_RE.findall(expr)[-1]
    if last.startswith('"'):
        return last[1:-1].replace('""', '"')
    return last


def _unwrap(expr: str) -> str:
    expr = expr.strip()
    while expr.startswith("(") and _matching_paren(mask_literals(expr), 0) == len(expr) - 1:
        expr = expr[1:-1].strip()
    return expr


# ── Clause splitting ─────────────────────────────────────

def _split_clauses(sql: str) -> dict[str, str] | None:
    masked = mask_literals(sql)
    depths = _depths(masked)

    select_m = _find_top_level(_CLAUSE_PATTERNS["select"], masked, depths)
    if select_m is None:
        return None

    positions: list[tuple[int, int, str]] = [(select_m.start(), select_m.end(), "select")]
    for name, pattern in _CLAUSE_PATTERNS.items():
        if name == "select":
            continue
        m = _find_top_level(pattern, masked, depths, select_m.end())
        if m is not None:
            positions.append((m.start(), m.end(), name))
    positions.sort()

    clauses: dict[str, str] = {}
    for i, (_, end, name) in enumerate(positions):
        stop = positions[i + 1][0] if i + 1 < len(positions) else len(sql)
        clauses[name] = sql[end:stop].strip()
    return clauses


def _split_alias(item: str) -> tuple[str, str | None]:
    masked = mask_literals(item)
    m = _EXPLICIT_ALIAS_RE.match(masked) or _IMPLICIT_ALIAS_RE.match(masked)
    if m is None:
        return item.strip(), None
    expr = item[: m.end("expr")].strip()
    alias = item[m.start("alias"): m.end("alias")].strip()
    if alias.upper() in _RESERVED_WORDS:
        return item.strip(), None
    if alias.startswith('"'):
        alias = alias[1:-1].replace('""', '"')
    return expr, alias


def _parse_table(from_clause: str) -> str:
    m = re.match(rf"\s*({_IDENT}(?:\s*\.\s*{_IDENT})*)", from_clause)
    if m is None:
        return from_clause.strip()
    parts = _IDENT_PART_RE.findall(m.group(1))
    return ".".join(p[1:-1] if p.startswith('"') else p for p in parts)


# ── Aggregate analysis ───────────────────────────────────

@dataclass(frozen=True)
class _AggCall:
    function: str
    agg_type: str
    inner: str
    distinct: bool


def _single_aggregate(expr: str) -> _AggCall | None:
    """Return the call when *expr* is exactly one aggregate call, e.g. ``SUM(x)``."""
    expr = _unwrap(expr)
    masked = mask_literals(expr)
    m = _AGG_START_RE.match(masked)
    if m is None or _matching_paren(masked, m.end() - 1) != len(expr) - 1:
        return None
    return _build_call(m.group(1), expr[m.end():-1])


def _embedded_aggregates(expr: str) -> list[_AggCall]:
    masked = mask_literals(expr)
    calls: list[_AggCall] = []
    for m in _AGG_START_RE.finditer(masked):
        close = _matching_paren(masked, m.end() - 1)
        if close != -1:
            calls.append(_build_call(m.group(1), expr[m.end():close]))
    return calls


def _build_call(function: str, inner: str) -> _AggCall:
    inner = inner.strip()
    distinct = bool(_DISTINCT_RE.match(inner))
    if distinct:
        inner = _DISTINCT_RE.sub("", inner, count=1)
    inner = _unwrap(inner)
    cast = _CAST_RE.match(inner)
    if cast is not None:
        inner = _unwrap(cast.group("inner"))
    fn = function.lower()
    agg_type = _AGG_TYPES.get(fn, fn)
    if agg_type == "count" and distinct:
        agg_type = "count_distinct"
    return _AggCall(function=function.upper(), agg_type=agg_type, inner=inner, distinct=distinct)


def _canonical_form(expr: str) -> str:
    """Compare expressions ignoring quotes, table qualifiers, whitespace and case."""
    text = re.sub(r'"(?:[^"]|"")+"\s*\.\s*', "", expr)
    text = re.sub(r"\b[A-Za-z_]\w*\s*\.\s*(?=[A-Za-z_\"])", "", text)
    return re.sub(r"\s+", "", text.replace('"', "")).upper()


# ── Error builders ───────────────────────────────────────

def _alias_metadata(catalog: SemanticCatalog, name: str) -> dict[str, Any] | None:
    dim = catalog.resolve_dimension(name)
    if dim is not None:
        return {
            "alias": dim.alias,
            "kind": "dimension",
            "source_field": dim.source,
            "transformation": dim.transformation,
        }
    entry = catalog.resolve_measure(name)
    if entry is not None:
        meta: dict[str, Any] = {
            "alias": entry.alias,
            "kind": "measure",
            "source_field": entry.source_field,
            "canonical_sql": entry.canonical_sql,
            "format": entry.format_hint,
        }
        if isinstance(entry, Aggregation):
            meta["aggregation"] = entry.type
        return meta
    return None


def _canonical_select(catalog: SemanticCatalog, name: str) -> str:
    dim = catalog.resolve_dimension(name)
    if dim is not None:
        return _dimension_select(dim)
    entry = catalog.resolve_measure(name)
    if entry is not None:
        return f"{entry.canonical_sql} AS {entry.alias}"
    return name


def _dimension_select(dim: Dimension) -> str:
    source = f"({dim.transformation})" if dim.transformation else dim.source
    return f'{source} AS "{dim.alias}"'


def _alias_as_column_error(catalog: SemanticCatalog, name: str, clause: str) -> ValidationError:
    meta = _alias_metadata(catalog, name) or {}
    kind = meta.get("kind", "catalog")
    if clause == "GROUP BY" and kind == "dimension":
        fix = f"GROUP BY {meta.get('transformation') or meta.get('source_field')} (or its position in SELECT)"
    else:
        fix = _canonical_select(catalog, name)
    return ValidationError(
        kind=ALIAS_USED_AS_COLUMN,
        offending_identifier=name,
        human_message=(
            f"'{name}' is a {kind} alias, not a column of {catalog.table}; "
            f"it cannot be referenced directly in {clause}."
        ),
        suggested_correction=fix,
        related_field_metadata=meta or None,
    )


def _unknown_column_error(catalog: SemanticCatalog, name: str, clause: str) -> ValidationError:
    return ValidationError(
        kind=UNKNOWN_COLUMN,
        offending_identifier=name,
        human_message=f"'{name}' in {clause} is neither a column nor an alias of {catalog.table}.",
        suggested_correction=_closest_name_hint(catalog, name),
    )


def _closest_name_hint(catalog: SemanticCatalog, name: str) -> str:
    lowered = name.lower().replace(" ", "_")
    candidates = list(catalog.fields) + catalog.list_measure_aliases()
    for candidate in candidates:
        c = candidate.lower()
        if lowered in c or c in lowered:
            if catalog.is_field(candidate):
                return f"Use the column {candidate}"
            return f"Use {_canonical_select(catalog, candidate)}"
    return f"Use one of the columns: {', '.join(list(catalog.fields)[:_GUIDANCE_LIMIT])}"


# ── Item checks ──────────────────────────────────────────

def _check_reference(ref: str, catalog: SemanticCatalog, clause: str) -> ValidationError | None:
    """Inner reference of an aggregate, or a plain column."""
    if ref == "*" or _LITERAL_RE.match(ref) or _CASE_RE.search(mask_literals(ref)):
        return None
    name = normalise_identifier(ref)
    if name is None:
        return None  # computed inner expression
    if catalog.is_field(name):
        return None
    if catalog.is_alias(name):
        return _alias_as_column_error(catalog, name, clause)
    return _unknown_column_error(catalog, name, clause)


def _check_select_item(
    expr: str,
    alias: str | None,
    catalog: SemanticCatalog,
) -> list[ValidationError]:
    errors: list[ValidationError] = []
    masked = mask_literals(expr)

    # CASE expressions (bucketing, formulas) pass unconditionally
    if _CASE_RE.search(masked):
        return errors
    if _STAR_RE.match(expr.strip()):
        return errors

    call = _single_aggregate(expr)
    if call is not None:
        err = _check_reference(call.inner, catalog, "SELECT")
        if err is not None:
            errors.append(err)
        if alias is not None:
            err = _aggregation_mismatch(alias, [call], catalog)
            if err is not None:
                errors.append(err)
        else:
            errors.append(_missing_alias_error(expr, catalog))
        return errors

    name = normalise_identifier(expr)
    if name is not None or _LITERAL_RE.match(expr.strip()):
        err = _check_reference(expr, catalog, "SELECT")
        if err is not None:
            errors.append(err)
        return errors

    # Computed expression: embedded aggregates must still aggregate real columns
    embedded = _embedded_aggregates(expr)
    for call in embedded:
        err = _check_reference(call.inner, catalog, "SELECT")
        if err is not None:
            errors.append(err)
    if alias is None:
        errors.append(_missing_alias_error(expr, catalog))
    else:
        err = _aggregation_mismatch(alias, embedded, catalog)
        if err is not None:
            errors.append(err)
    return errors


def _aggregation_mismatch(
    alias: str,
    calls: list[_AggCall],
    catalog: SemanticCatalog,
) -> ValidationError | None:
    """First aggregate whose type differs from the one declared for *alias*."""
    declared = catalog.resolve_measure(alias)
    if not isinstance(declared, Aggregation):
        return None
    for call in calls:
        if call.agg_type == declared.type:
            continue
        return ValidationError(
            kind=WRONG_AGGREGATION_TYPE,
            offending_identifier=declared.alias,
            human_message=(
                f"'{declared.alias}' is declared as {declared.type.upper()} "
                f"but the query uses {call.function}"
                f"{' DISTINCT' if call.distinct else ''}."
            ),
            suggested_correction=f"{declared.canonical_sql} AS {declared.alias}",
            related_field_metadata=_alias_metadata(catalog, declared.alias),
        )
    return None


def _missing_alias_error(expr: str, catalog: SemanticCatalog) -> ValidationError:
    target = _canonical_form(expr)
    match = None
    for alias, sql in catalog.describe_measures().items():
        if _canonical_form(sql) == target:
            match = alias
            break
    if match is not None:
        fix = f"{expr.strip()} AS {match}"
    else:
        fix = f"{expr.strip()} AS <descriptive_alias>"
    return ValidationError(
        kind=MISSING_ALIAS,
        offending_identifier=expr.strip(),
        human_message=f"Expression '{expr.strip()}' has no AS alias, so its result column cannot be referenced.",
        suggested_correction=fix,
        related_field_metadata=_alias_metadata(catalog, match) if match else None,
    )


def _check_group_item(
    item: str,
    select_items: list[SelectItem],
    catalog: SemanticCatalog,
) -> ValidationError | None:
    if _POSITION_RE.match(item):
        position = int(item)
        if 1 <= position <= len(select_items):
            return None
        return ValidationError(
            kind=UNKNOWN_COLUMN,
            offending_identifier=item,
            human_message=f"GROUP BY position {position} is out of range (SELECT has {len(select_items)} columns).",
            suggested_correction=f"Use a position between 1 and {len(select_items)}",
        )
    if _CASE_RE.search(mask_literals(item)):
        return None
    name = normalise_identifier(item)
    if name is None:
        return None  # computed grouping expression
    select_aliases = {s.alias.lower() for s in select_items if s.alias}
    if name.lower() in select_aliases or catalog.is_field(name):
        return None
    if catalog.is_alias(name):
        return _alias_as_column_error(catalog, name, "GROUP BY")
    return _unknown_column_error(catalog, name, "GROUP BY")


# ── Guidance ─────────────────────────────────────────────

def build_correction_guidance(errors: list[ValidationError], catalog: SemanticCatalog) -> str:
    """Numbered error list with fixes, then a trimmed listing of valid names."""
    if not errors:
        return ""
    lines = [f"The SQL query has {len(errors)} error(s):", ""]
    for i, err in enumerate(errors, start=1):
        lines.append(f"{i}. [{err.kind}] {err.human_message}")
        lines.append(f"   Fix: {err.suggested_correction}")
    lines.append("")

    mentioned = {e.offending_identifier.lower() for e in errors}

    def _ranked(names: list[str]) -> list[str]:
        ranked = sorted(names, key=lambda n: n.lower() not in mentioned)
        return ranked[:_GUIDANCE_LIMIT]

    lines.append("VALID DIMENSIONS (select the source column, name it with AS):")
    for alias in _ranked(catalog.list_dimension_aliases()):
        lines.append(f"  - {_dimension_select(catalog.resolve_dimension(alias))}")
    lines.append("VALID MEASURES (use exactly this aggregation):")
    measures = catalog.describe_measures()
    for alias in _ranked(list(measures)):
        lines.append(f"  - {measures[alias]} AS {alias}")
    lines.append(f"TABLE: {catalog.table}")
    lines.append("Return one corrected SELECT statement using only these columns.")
    return "\n".join(lines)


# ── Public API ───────────────────────────────────────────

def _dedupe(errors: list[ValidationError]) -> list[ValidationError]:
    seen: set[tuple[str, str]] = set()
    unique: list[ValidationError] = []
    for err in errors:
        key = (err.kind, err.offending_identifier.lower())
        if key not in seen:
            seen.add(key)
            unique.append(err)
    return unique


def _select_items(select_clause: str, catalog: SemanticCatalog) -> list[SelectItem]:
    items: list[SelectItem] = []
    select_clause = _DISTINCT_RE.sub("", select_clause.strip(), count=1)
    for raw in split_top_level(select_clause):
        expr, alias = _split_alias(raw)
        output = alias or normalise_identifier(expr) or expr
        is_measure = bool(_AGG_START_RE.search(mask_literals(expr))) or catalog.resolve_measure(output) is not None
        items.append(SelectItem(expression=expr, alias=alias, output_name=output, is_measure=is_measure))
    return items


def clause_start(sql: str, clause: str) -> int | None:
    """Offset of a top-level clause keyword (``where``, ``group_by``, ``order_by``, ``limit`` ...)."""
    masked = mask_literals(sql)
    m = _find_top_level(_CLAUSE_PATTERNS[clause], masked, _depths(masked))
    return m.start() if m is not None else None


def parse_sql(sql: str, catalog: SemanticCatalog) -> ParsedQuery | None:
    """Surface-parse *sql* without checking it; None when there is no SELECT."""
    text = sql.strip().rstrip(";").strip()
    clauses = _split_clauses(text)
    if clauses is None:
        return None
    select_items = _select_items(clauses.get("select", ""), catalog)
    limit_m = re.match(r"\d+", clauses.get("limit", ""))
    where = clauses.get("where", "")
    return ParsedQuery(
        sql=text,
        table=_parse_table(clauses.get("from", "")) or catalog.table,
        select_items=tuple(select_items),
        dimensions=tuple(s.output_name for s in select_items if not s.is_measure),
        measures=tuple(s.output_name for s in select_items if s.is_measure),
        group_by=tuple(split_top_level(clauses.get("group_by", ""))),
        filters=(where,) if where else (),
        order_by=tuple(split_top_level(clauses.get("order_by", ""))),
        limit=int(limit_m.group(0)) if limit_m else None,
    )


def validate_sql(sql: str, catalog: SemanticCatalog) -> ValidationResult:
    """Cross-check *sql* against *catalog*.

    Parameters
    ----------
    sql : str
        A single flat SELECT statement (a trailing ``;`` is tolerated).
    catalog : SemanticCatalog
        Catalog of the table the statement queries.

    Returns
    -------
    ValidationResult
        ``valid`` with a ``ParsedQuery`` on success, otherwise the errors and
        correction guidance.  Never raises for malformed SQL.
    """
    text = sql.strip().rstrip(";").strip()
    clauses = _split_clauses(text)
    if clauses is None:
        err = ValidationError(
            kind=UNKNOWN_COLUMN,
            offending_identifier=text[:40] or "<empty>",
            human_message="No SELECT statement found.",
            suggested_correction=f"Write a single SELECT ... FROM {catalog.table} statement.",
        )
        return ValidationResult(False, [err], build_correction_guidance([err], catalog))

    errors: list[ValidationError] = []
    masked = mask_literals(text)
    for pattern, shown, replacement in _INVALID_FUNCTIONS:
        if pattern.search(masked):
            errors.append(ValidationError(
                kind=UNKNOWN_COLUMN,
                offending_identifier=shown,
                human_message=f"{shown} is not a DuckDB function.",
                suggested_correction=f"Use {replacement}",
            ))

    # ── SELECT ───────────────────────────────────────
    select_items = _select_items(clauses.get("select", ""), catalog)
    for item in select_items:
        errors.extend(_check_select_item(item.expression, item.alias, catalog))

    # ── GROUP BY ─────────────────────────────────────
    for entry in split_top_level(clauses.get("group_by", "")):
        err = _check_group_item(entry, select_items, catalog)
        if err is not None:
            errors.append(err)

    errors = _dedupe(errors)
    if errors:
        logger.info("SQL validation failed table=%s kinds=%s", catalog.table, [e.kind for e in errors])
        return ValidationResult(False, errors, build_correction_guidance(errors, catalog))

    return ValidationResult(True, [], "", parse_sql(text, catalog))
