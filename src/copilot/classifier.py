"""
Visualization classifier -- categorises a resolved query's aliases and picks
its archetype and ranked chart recommendations.

The categorisation is heuristic: ordered substring / type rules over alias
names and catalog metadata, first match wins.  The rule tables below are the
whole of the logic; keep new cases as new rows, in priority order.

Archetypes (evaluated in order):
  kpi          -- no dimensions
  time_series  -- any temporal dimension
  funnel       -- any sequential (custom-sorted) dimension
  breakdown    -- two or more dimensions
  comparison   -- one dimension with several measures or a rate
  distribution -- one dimension otherwise
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from src.core.logging import get_logger
from src.governance.semantic_loader import Dimension, Field, SemanticCatalog

logger = get_logger(__name__)

KPI = "kpi"
TIME_SERIES = "time_series"
FUNNEL = "funnel"
BREAKDOWN = "breakdown"
COMPARISON = "comparison"
DISTRIBUTION = "distribution"


@dataclass(frozen=True)
class ChartRecommendation:
    type: str
    priority: int
    reason: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VisualizationSpec:
    archetype: str
    dimensions: tuple[str, ...]
    measures: tuple[str, ...]
    dimension_categories: dict[str, str]
    measure_categories: dict[str, str]
    recommendations: tuple[ChartRecommendation, ...]
    warnings: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()

    @property
    def primary(self) -> ChartRecommendation:
        return self.recommendations[0]

    def dimensions_in(self, category: str) -> list[str]:
        return [d for d, c in self.dimension_categories.items() if c == category]

    def measures_in(self, category: str) -> list[str]:
        return [m for m, c in self.measure_categories.items() if c == category]

    def summary(self) -> str:
        """One line suitable for prompt enrichment or logging."""
        return (
            f"{self.archetype} query: {len(self.dimensions)} dimension(s), "
            f"{len(self.measures)} measure(s); recommended {self.primary.type} "
            f"({self.primary.reason})"
        )


# ── Dimension rules ──────────────────────────────────────

_TEMPORAL_NAME_RE = re.compile(r"(date|time|day|week|month|quarter|year|hour)", re.IGNORECASE)
_TEMPORAL_TYPE_RE = re.compile(r"DATE|TIME", re.IGNORECASE)
_BINARY_NAME_RE = re.compile(r"^(is|has)_|_flag$|\b(is|has) ", re.IGNORECASE)


def _is_temporal(alias: str, dim: Dimension | None, f: Field | None) -> bool:
    if f is not None and (f.category == "temporal" or _TEMPORAL_TYPE_RE.search(f.physical_type)):
        return True
    names = [alias] + ([dim.source] if dim is not None else [])
    return any(_TEMPORAL_NAME_RE.search(n) for n in names)


def _is_sequential(alias: str, dim: Dimension | None, f: Field | None) -> bool:
    return dim is not None and dim.is_sequential


def _is_binary(alias: str, dim: Dimension | None, f: Field | None) -> bool:
    if f is not None:
        if f.physical_type.startswith("BOOL") or f.ingest_type == "boolean":
            return True
        if f.members is not None and len(f.members) == 2:
            return True
    names = [alias] + ([dim.source] if dim is not None else [])
    return any(_BINARY_NAME_RE.search(n) for n in names)


DimensionRule = Callable[[str, "Dimension | None", "Field | None"], bool]

DIMENSION_RULES: tuple[tuple[str, DimensionRule], ...] = (
    ("temporal", _is_temporal),
    ("sequential", _is_sequential),
    ("binary", _is_binary),
)


def categorize_dimension(alias: str, catalog: SemanticCatalog | None = None) -> str:
    dim = catalog.resolve_dimension(alias) if catalog is not None else None
    f = catalog.field_for_dimension(dim) if catalog is not None and dim is not None else None
    for category, rule in DIMENSION_RULES:
        if rule(alias, dim, f):
            return category
    return "categorical"


# ── Measure rules ────────────────────────────────────────

MEASURE_RULES: tuple[tuple[str, re.Pattern], ...] = (
    ("rates", re.compile(r"rate|(?:^|_)ratio", re.IGNORECASE)),  # not "duRATIOn"
    ("revenue", re.compile(r"revenue", re.IGNORECASE)),
    ("events", re.compile(r"event", re.IGNORECASE)),
    ("averages", re.compile(r"^avg_", re.IGNORECASE)),
    ("counts", re.compile(r"count|session|visitor|user", re.IGNORECASE)),
)


def categorize_measure(alias: str) -> str:
    for category, pattern in MEASURE_RULES:
        if pattern.search(alias):
            return category
    return "totals"


# ── Archetype & recommendations ──────────────────────────

def _archetype(dim_categories: list[str], measure_categories: list[str]) -> str:
    if not dim_categories:
        return KPI
    if "temporal" in dim_categories:
        return TIME_SERIES
    if "sequential" in dim_categories:
        return FUNNEL
    if len(dim_categories) >= 2:
        return BREAKDOWN
    if len(dim_categories) == 1 and (len(measure_categories) >= 2 or "rates" in measure_categories):
        return COMPARISON
    if len(dim_categories) == 1:
        return DISTRIBUTION
    return COMPARISON


RECOMMENDATIONS: dict[str, tuple[tuple[str, str], ...]] = {
    KPI: (
        ("kpi", "Single aggregate values read best as headline numbers"),
        ("bar", "Side-by-side bars compare several headline values"),
    ),
    TIME_SERIES: (
        ("line", "Line charts show trends over time"),
        ("area", "Area charts emphasise volume over time"),
    ),
    FUNNEL: (
        ("funnel", "Ordered stages show drop-off between steps"),
        ("bar", "Bars compare stage sizes in stage order"),
    ),
    DISTRIBUTION: (
        ("pie", "Pie charts show each category's share of the whole"),
        ("bar", "Bars compare categories precisely"),
    ),
    COMPARISON: (
        ("bar", "Bars compare values across categories"),
    ),
    BREAKDOWN: (
        ("heatmap", "Heatmaps show a measure across two categorical axes"),
        ("stacked-bar", "Stacked bars break each category down by a second one"),
    ),
}


def _recommendations(archetype: str, dims: list[str], measures: list[str]) -> tuple[ChartRecommendation, ...]:
    recs: list[ChartRecommendation] = []
    for priority, (chart_type, reason) in enumerate(RECOMMENDATIONS[archetype], start=1):
        config: dict[str, Any] = {"x_key": dims[0] if dims else None, "y_keys": list(measures)}
        if chart_type in ("stacked-bar", "heatmap") and len(dims) >= 2:
            config["series_key"] = dims[1]
        recs.append(ChartRecommendation(type=chart_type, priority=priority, reason=reason, config=config))
    return tuple(recs)


def _advice(
    archetype: str,
    dims: list[str],
    dim_categories: dict[str, str],
    measure_categories: dict[str, str],
) -> tuple[list[str], list[str]]:
    warnings: list[str] = []
    suggestions: list[str] = []
    if len(dims) > 2:
        warnings.append("More than two dimensions; charts will only show the first two.")
        suggestions.append("Use a pivot table for three or more dimensions.")
    if len(measure_categories) > 4:
        warnings.append("Many measures on one chart can be hard to read.")
    categories = set(measure_categories.values())
    if "rates" in categories:
        suggestions.append("Rate measures detected: format the value axis as a percentage.")
        if len(categories) > 1:
            warnings.append("Rates are mixed with absolute values; consider separate charts.")
    if archetype == TIME_SERIES and "revenue" in categories:
        suggestions.append("Consider a cumulative view to show revenue growth.")
    if archetype == DISTRIBUTION and "binary" in dim_categories.values():
        suggestions.append("Binary splits read well as a two-slice pie or a single KPI ratio.")
    return warnings, suggestions


def classify(
    dimensions: list[str],
    measures: list[str],
    catalog: SemanticCatalog | None = None,
) -> VisualizationSpec:
    """Classify a resolved (dimensions, measures) pair.

    Parameters
    ----------
    dimensions : list[str]
        Dimension aliases in output order.
    measures : list[str]
        Measure aliases in output order.
    catalog : SemanticCatalog, optional
        Supplies field types and sort directives.  Without it, or for aliases
        the catalog does not know, dimensions are categorised by name alone.
    """
    dims = list(dimensions)
    meas = list(measures)
    dim_categories = {d: categorize_dimension(d, catalog) for d in dims}
    measure_categories = {m: categorize_measure(m) for m in meas}

    archetype = _archetype(list(dim_categories.values()), list(measure_categories.values()))
    warnings, suggestions = _advice(archetype, dims, dim_categories, measure_categories)

    spec = VisualizationSpec(
        archetype=archetype,
        dimensions=tuple(dims),
        measures=tuple(meas),
        dimension_categories=dim_categories,
        measure_categories=measure_categories,
        recommendations=_recommendations(archetype, dims, meas),
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
    )
    logger.debug("Classified query: %s", spec.summary())
    return spec
