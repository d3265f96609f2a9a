"""
Loads, parses, and registers per-table semantic catalogs.

A catalog is the single source of truth for one table:
  - fields      (physical columns: engine type, ingest type, category)
  - dimensions  (alias -> source column or SQL transformation, sort directive)
  - measures    (alias -> aggregation over a source column, or formula SQL)

Catalogs are parsed once into frozen dataclasses, checked by
``validate_catalog`` and only then exposed through a ``CatalogRegistry``.
A catalog with colliding aliases or dangling source fields never reaches
the compiler or validator.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Union

import yaml

from src.core.config import get_settings
from src.core.errors import CatalogError
from src.core.logging import get_logger
from src.core.utils import format_label

logger = get_logger(__name__)

FIELD_CATEGORIES = ("categorical", "numerical", "temporal", "identifier", "continuous")
INGEST_TYPES = ("number", "string", "timestamp", "boolean")
AGGREGATION_TYPES = ("sum", "avg", "count", "count_distinct", "max", "min")
FORMAT_HINTS = ("number", "currency", "percentage")

# Measure source meaning "no column": COUNT(*)
COUNT_SENTINEL = "_count"

# Engine-side ingest spellings folded onto the four canonical ingest types
_INGEST_ALIASES = {
    "integer": "number",
    "int": "number",
    "bigint": "number",
    "float": "number",
    "double": "number",
    "decimal": "number",
    "uint8array": "number",
    "varchar": "string",
    "text": "string",
    "date": "timestamp",
    "datetime": "timestamp",
    "bool": "boolean",
}


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class Field:
    name: str
    physical_type: str
    ingest_type: str
    category: str
    members: tuple[Any, ...] | None = None
    sanitize: bool = False
    description: str = ""


@dataclass(frozen=True)
class Dimension:
    source: str
    alias: str
    transformation: str | None = None
    sort: str | None = None
    description: str = ""

    @property
    def custom_sort_order(self) -> list[str] | None:
        """Ordered member list of a ``custom:a,b,c`` sort directive."""
        if not self.sort or not self.sort.startswith("custom:"):
            return None
        return [v.strip() for v in self.sort[len("custom:"):].split(",") if v.strip()]

    @property
    def is_sequential(self) -> bool:
        return self.custom_sort_order is not None


@dataclass(frozen=True)
class Aggregation:
    alias: str
    type: str
    source_field: str
    format_hint: str = "number"
    decimals: int = 0
    currency: str | None = None
    description: str = ""

    kind = "aggregation"

    @property
    def canonical_sql(self) -> str:
        """Unqualified form shown in correction guidance, e.g. ``SUM(session_revenue)``."""
        if self.source_field == COUNT_SENTINEL:
            return "COUNT(*)"
        if self.type == "count_distinct":
            return f"COUNT(DISTINCT {self.source_field})"
        return f"{self.type.upper()}({self.source_field})"


@dataclass(frozen=True)
class Formula:
    alias: str
    sql: str
    source_field: str
    format_hint: str = "number"
    decimals: int = 0
    currency: str | None = None
    description: str = ""

    kind = "formula"

    @property
    def canonical_sql(self) -> str:
        return self.sql


MeasureEntry = Union[Aggregation, Formula]


@dataclass(frozen=True)
class Measure:
    source: str
    description: str = ""
    aggregations: tuple[Aggregation, ...] = ()
    formulas: tuple[Formula, ...] = ()

    @property
    def entries(self) -> list[MeasureEntry]:
        return [*self.aggregations, *self.formulas]


@dataclass
class SemanticCatalog:
    """Fully parsed semantic metadata for one table."""

    table: str
    description: str
    fields: dict[str, Field]             # keyed by column name
    dimensions: dict[str, Dimension]     # keyed by source name
    measures: dict[str, Measure]         # keyed by source name
    _dims_by_alias: dict[str, Dimension] = field(default_factory=dict, init=False, repr=False)
    _measures_by_alias: dict[str, MeasureEntry] = field(default_factory=dict, init=False, repr=False)
    _fields_lower: dict[str, Field] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for dim in self.dimensions.values():
            self._dims_by_alias.setdefault(dim.alias, dim)
        for measure in self.measures.values():
            for entry in measure.entries:
                self._measures_by_alias.setdefault(entry.alias, entry)
        self._fields_lower = {name.lower(): f for name, f in self.fields.items()}

    # ── Alias look-ups ───────────────────────────────

    def resolve_dimension(self, alias: str) -> Dimension | None:
        dim = self._dims_by_alias.get(alias)
        if dim is None:
            dim = _match_ci(self._dims_by_alias, alias)
        return dim

    def resolve_measure(self, alias: str) -> MeasureEntry | None:
        entry = self._measures_by_alias.get(alias)
        if entry is None:
            entry = _match_ci(self._measures_by_alias, alias)
        return entry

    def list_dimension_aliases(self) -> list[str]:
        return list(self._dims_by_alias.keys())

    def list_measure_aliases(self) -> list[str]:
        return list(self._measures_by_alias.keys())

    def is_alias(self, name: str) -> bool:
        return self.resolve_dimension(name) is not None or self.resolve_measure(name) is not None

    # ── Field look-ups ───────────────────────────────

    def get_field(self, name: str) -> Field | None:
        return self.fields.get(name) or self._fields_lower.get(name.lower())

    def is_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    def fields_by_category(self, category: str) -> list[Field]:
        return [f for f in self.fields.values() if f.category == category]

    def field_for_dimension(self, dim: Dimension) -> Field | None:
        return self.get_field(dim.source)

    # ── Prompt / guidance listings ───────────────────

    def describe_dimensions(self) -> dict[str, str]:
        """alias -> source column or transformation SQL."""
        return {
            alias: (dim.transformation or dim.source)
            for alias, dim in self._dims_by_alias.items()
        }

    def describe_measures(self) -> dict[str, str]:
        """alias -> canonical aggregation / formula SQL."""
        return {alias: entry.canonical_sql for alias, entry in self._measures_by_alias.items()}


def _match_ci(index: dict[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in index.items():
        if key.lower() == lowered:
            return value
    return None


# ── Parsing ──────────────────────────────────────────────

def _normalise_ingest(raw: str | None) -> str:
    value = (raw or "string").strip().lower()
    return _INGEST_ALIASES.get(value, value)


def _mapping(table: str, raw: Any, what: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CatalogError(table, [f"{what} must be a mapping, got {type(raw).__name__}."])
    return raw


def _decimals(table: str, owner: str, raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise CatalogError(table, [f"'{owner}': decimals must be an integer, got {raw!r}."]) from None


def _parse_field(name: str, raw: dict[str, Any]) -> Field:
    members = raw.get("members")
    return Field(
        name=name,
        physical_type=str(raw.get("md_data_type", "VARCHAR")).upper(),
        ingest_type=_normalise_ingest(raw.get("ingest_data_type")),
        category=str(raw.get("data_type_category", "categorical")).lower(),
        members=tuple(members) if members else None,
        sanitize=bool(raw.get("sanitize", False)),
        description=raw.get("description", "") or "",
    )


def _parse_dimension(source: str, raw: dict[str, Any]) -> Dimension:
    return Dimension(
        source=source,
        alias=raw.get("alias_name") or source,
        transformation=raw.get("transformation") or None,
        sort=raw.get("sort") or None,
        description=raw.get("description", "") or "",
    )


def _parse_aggregation(table: str, source: str, raw: dict[str, Any]) -> Aggregation:
    if not isinstance(raw, dict) or len(raw) != 1:
        raise CatalogError(table, [f"Measure '{source}': each aggregation must be a single {{type: details}} mapping."])
    agg_type, details = next(iter(raw.items()))
    details = _mapping(table, details, f"Measure '{source}' aggregation '{agg_type}'")
    alias = details.get("alias") or f"{agg_type}_{source}"
    return Aggregation(
        alias=alias,
        type=str(agg_type).lower(),
        source_field=source,
        format_hint=details.get("format", "number"),
        decimals=_decimals(table, alias, details.get("decimals", 0)),
        currency=details.get("currency"),
        description=details.get("description", "") or "",
    )


def _parse_formula(table: str, source: str, alias: str, raw: dict[str, Any]) -> Formula:
    if not isinstance(raw, dict) or not raw.get("sql"):
        raise CatalogError(table, [f"Formula '{alias}' on '{source}' has no sql."])
    return Formula(
        alias=alias,
        sql=str(raw["sql"]).strip(),
        source_field=source,
        format_hint=raw.get("format", "number"),
        decimals=_decimals(table, alias, raw.get("decimals", 0)),
        currency=raw.get("currency"),
        description=raw.get("description", "") or "",
    )


def _parse_measure(table: str, source: str, raw: dict[str, Any]) -> Measure:
    raw = _mapping(table, raw, f"Measure '{source}'")
    aggs_raw = raw.get("aggregations") or []
    if not isinstance(aggs_raw, list):
        raise CatalogError(table, [f"Measure '{source}': aggregations must be a list."])
    formulas_raw = raw.get("formula") or {}
    if not isinstance(formulas_raw, dict):
        raise CatalogError(table, [f"Measure '{source}': formula must be a mapping of alias -> definition."])
    return Measure(
        source=source,
        description=raw.get("description", "") or "",
        aggregations=tuple(_parse_aggregation(table, source, a) for a in aggs_raw),
        formulas=tuple(_parse_formula(table, source, alias, f) for alias, f in formulas_raw.items()),
    )


def parse_catalog(raw: dict[str, Any]) -> SemanticCatalog:
    """Build a typed catalog from the JSON/YAML registration shape."""
    if not isinstance(raw, dict) or not raw.get("table"):
        raise CatalogError(str(raw.get("table", "?")) if isinstance(raw, dict) else "?",
                           ["Catalog must be a mapping with a 'table' key."])
    table = str(raw["table"])
    return SemanticCatalog(
        table=table,
        description=raw.get("description", "") or "",
        fields={
            name: _parse_field(name, _mapping(table, f, f"Field '{name}'"))
            for name, f in _mapping(table, raw.get("fields"), "fields").items()
        },
        dimensions={
            src: _parse_dimension(src, _mapping(table, d, f"Dimension '{src}'"))
            for src, d in _mapping(table, raw.get("dimensions"), "dimensions").items()
        },
        measures={
            src: _parse_measure(table, src, m)
            for src, m in _mapping(table, raw.get("measures"), "measures").items()
        },
    )


# ── Registration checks ──────────────────────────────────

def validate_catalog(catalog: SemanticCatalog) -> list[str]:
    """Return a list of problems (empty list = catalog may be registered).

    Checks performed:
      1. Every alias is unique across dimensions and measures
      2. Dimension sources exist as fields (unless a transformation is given)
      3. Aggregation sources exist as fields (``_count`` excepted)
      4. Aggregation types, format hints and field categories are known
    """
    problems: list[str] = []

    seen: dict[str, str] = {}

    def _claim(alias: str, owner: str) -> None:
        key = alias.lower()
        if key in seen:
            problems.append(f"Duplicate alias '{alias}' ({owner} collides with {seen[key]}).")
        else:
            seen[key] = owner

    for f in catalog.fields.values():
        if f.category not in FIELD_CATEGORIES:
            problems.append(
                f"Field '{f.name}' has unknown category '{f.category}'. "
                f"Allowed: {', '.join(FIELD_CATEGORIES)}"
            )
        if f.ingest_type not in INGEST_TYPES:
            problems.append(f"Field '{f.name}' has unknown ingest type '{f.ingest_type}'.")

    for dim in catalog.dimensions.values():
        _claim(dim.alias, f"dimension '{dim.source}'")
        if dim.transformation is None and not catalog.is_field(dim.source):
            problems.append(f"Dimension '{dim.alias}' references unknown field '{dim.source}'.")

    for measure in catalog.measures.values():
        for agg in measure.aggregations:
            _claim(agg.alias, f"measure '{measure.source}'")
            if agg.type not in AGGREGATION_TYPES:
                problems.append(
                    f"Measure '{agg.alias}' uses unknown aggregation '{agg.type}'. "
                    f"Allowed: {', '.join(AGGREGATION_TYPES)}"
                )
            if agg.source_field != COUNT_SENTINEL and not catalog.is_field(agg.source_field):
                problems.append(f"Measure '{agg.alias}' references unknown field '{agg.source_field}'.")
            if agg.source_field == COUNT_SENTINEL and agg.type != "count":
                problems.append(f"Measure '{agg.alias}': '{COUNT_SENTINEL}' only supports the count aggregation.")
        for formula in measure.formulas:
            _claim(formula.alias, f"formula on '{measure.source}'")
        for entry in measure.entries:
            if entry.format_hint not in FORMAT_HINTS:
                problems.append(f"Measure '{entry.alias}' has unknown format '{entry.format_hint}'.")

    return problems


# ── Registry ─────────────────────────────────────────────

class CatalogRegistry:
    """Explicit table -> catalog registry.

    ``register`` is a full replace keyed by table name and bumps a
    monotonically increasing version token; readers pin a version with
    ``snapshot`` for the duration of one run.
    """

    def __init__(self) -> None:
        self._catalogs: dict[str, SemanticCatalog] = {}
        self._versions: dict[str, int] = {}
        self._version = 0

    def register(self, catalog: SemanticCatalog | dict[str, Any]) -> SemanticCatalog:
        if isinstance(catalog, dict):
            catalog = parse_catalog(catalog)
        problems = validate_catalog(catalog)
        if problems:
            logger.error("Rejected catalog table=%s problems=%s", catalog.table, problems)
            raise CatalogError(catalog.table, problems)

        self._version += 1
        self._catalogs[catalog.table] = catalog
        self._versions[catalog.table] = self._version
        logger.info(
            "Registered catalog table=%s version=%d dimensions=%d measures=%d",
            catalog.table, self._version,
            len(catalog.list_dimension_aliases()), len(catalog.list_measure_aliases()),
        )
        return catalog

    def get(self, table: str) -> SemanticCatalog:
        catalog = self._catalogs.get(table)
        if catalog is None:
            raise CatalogError(
                table,
                [f"Table is not registered. Registered: {', '.join(self.list_tables()) or 'none'}"],
            )
        return catalog

    def list_tables(self) -> list[str]:
        return sorted(self._catalogs)

    @property
    def version(self) -> int:
        return self._version

    def version_of(self, table: str) -> int:
        self.get(table)
        return self._versions[table]

    def snapshot(self, table: str) -> tuple[SemanticCatalog, int]:
        return self.get(table), self._versions.get(table, 0)

    def __contains__(self, table: object) -> bool:
        return table in self._catalogs


# ── Draft catalogs for custom tables ─────────────────────

_TEMPORAL_TYPE_RE = re.compile(r"DATE|TIME", re.IGNORECASE)
_NUMERIC_TYPE_RE = re.compile(r"INT|DECIMAL|NUMERIC|DOUBLE|FLOAT|REAL|HUGEINT", re.IGNORECASE)
_CURRENCY_NAME_RE = re.compile(r"revenue|amount|price|cost|spend", re.IGNORECASE)
_IDENTIFIER_NAME_RE = re.compile(r"(^id$|_id$|^uuid|_key$)", re.IGNORECASE)


def _profile_column(name: str, physical_type: str) -> Field:
    ptype = physical_type.upper()
    if ptype.startswith("BOOL"):
        return Field(name, ptype, "boolean", "categorical", members=(True, False))
    if _IDENTIFIER_NAME_RE.search(name):
        ingest = "number" if _NUMERIC_TYPE_RE.search(ptype) else "string"
        return Field(name, ptype, ingest, "identifier")
    if _TEMPORAL_TYPE_RE.search(ptype):
        return Field(name, ptype, "timestamp", "temporal")
    if _NUMERIC_TYPE_RE.search(ptype):
        # BIGINT/HUGEINT values surface as oversized integers
        return Field(name, ptype, "number", "numerical", sanitize="BIGINT" in ptype or "HUGEINT" in ptype)
    if re.search(r"date|_at$|_on$", name, re.IGNORECASE):
        return Field(name, ptype, "string", "temporal")
    return Field(name, ptype, "string", "categorical")


def _default_measure(f: Field) -> Measure | None:
    fmt = "currency" if _CURRENCY_NAME_RE.search(f.name) else "number"
    currency = "USD" if fmt == "currency" else None
    decimals = 2 if fmt == "currency" else 0
    if f.category == "numerical":
        aggs = tuple(
            Aggregation(alias=f"{prefix}_{f.name}", type=agg_type, source_field=f.name,
                        format_hint=fmt if agg_type != "count" else "number",
                        decimals=decimals if agg_type != "count" else 0,
                        currency=currency if agg_type != "count" else None)
            for prefix, agg_type in (("total", "sum"), ("avg", "avg"), ("min", "min"),
                                     ("max", "max"), ("count", "count"))
        )
        formula = Formula(
            alias=f"unique_{f.name}_vals",
            sql=f"COUNT(DISTINCT {f.name})",
            source_field=f.name,
        )
        return Measure(source=f.name, aggregations=aggs, formulas=(formula,))
    if f.category == "identifier":
        formula = Formula(
            alias=f"unique_{f.name}",
            sql=f"COUNT(DISTINCT {f.name})",
            source_field=f.name,
            description=f"Distinct {format_label(f.name).lower()} values",
        )
        return Measure(source=f.name, formulas=(formula,))
    return None


def draft_catalog(table: str, columns: list[tuple[str, str]], description: str = "") -> SemanticCatalog:
    """Profile ``(column, engine_type)`` pairs into a registrable default catalog.

    Categorical, temporal and identifier columns become dimensions with a
    title-cased alias; numeric columns get total/avg/min/max/count
    aggregations; identifiers get a distinct-count formula.  A
    ``row_count`` measure (``COUNT(*)``) is always added.
    """
    fields: dict[str, Field] = {}
    dimensions: dict[str, Dimension] = {}
    measures: dict[str, Measure] = {}

    for name, physical_type in columns:
        f = _profile_column(name, physical_type)
        fields[name] = f
        if f.category in ("categorical", "temporal", "identifier"):
            dimensions[name] = Dimension(source=name, alias=format_label(name))
        measure = _default_measure(f)
        if measure is not None:
            measures[name] = measure

    measures[COUNT_SENTINEL] = Measure(
        source=COUNT_SENTINEL,
        aggregations=(Aggregation(alias="row_count", type="count", source_field=COUNT_SENTINEL),),
    )
    catalog = SemanticCatalog(
        table=table,
        description=description or f"Auto-profiled table {table}",
        fields=fields,
        dimensions=dimensions,
        measures=measures,
    )
    logger.info("Drafted catalog table=%s columns=%d", table, len(columns))
    return catalog


# ── Public API ───────────────────────────────────────────

def load_catalog_file(path: str | Path) -> SemanticCatalog:
    """Parse one catalog file (YAML, or JSON which YAML also reads)."""
    with open(path) as f:
        raw = yaml.safe_load(f)
    return parse_catalog(raw)


def load_registry(directory: str | Path | None = None) -> CatalogRegistry:
    """Register every ``*.yml`` / ``*.yaml`` / ``*.json`` catalog in *directory*."""
    root = Path(directory or get_settings().semantic_layer_dir)
    registry = CatalogRegistry()
    paths = sorted(p for p in root.iterdir() if p.suffix in (".yml", ".yaml", ".json"))
    for path in paths:
        registry.register(load_catalog_file(path))
    return registry


@lru_cache
def get_default_registry() -> CatalogRegistry:
    """Registry over the bundled ``semantic_layer`` directory (cached)."""
    return load_registry()
