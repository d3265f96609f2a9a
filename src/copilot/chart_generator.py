"""
Auto-chart generation.

Given a classified query and its result rows, builds a renderer-agnostic
``ChartSpec``: chart type, axis keys, rows and formatting hints.  The
classifier's top recommendation is used unless one of the data-shape
overrides applies:

  - sign area  -- a single time-series measure that is a net/delta/change
                  value, or whose rows hold both signs -> area-fill-by-value
  - pivot      -- two dimensions + one measure: the second dimension's
                  values become series columns (wide rows)
  - dual axis  -- one dimension + two measures: each measure gets its own
                  value axis (biaxial-bar for bar-like charts)

Supported chart types:
  kpi, bar, line, area, pie, funnel, heatmap, stacked-bar, biaxial-bar,
  area-fill-by-value
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from src.copilot.classifier import BREAKDOWN, TIME_SERIES, VisualizationSpec, classify
from src.core.logging import get_logger
from src.core.utils import format_label
from src.governance.semantic_loader import SemanticCatalog

logger = get_logger(__name__)

# ── Chart types ─────────────────────────────────────────

CHART_KPI = "kpi"
CHART_BAR = "bar"
CHART_LINE = "line"
CHART_AREA = "area"
CHART_PIE = "pie"
CHART_FUNNEL = "funnel"
CHART_HEATMAP = "heatmap"
CHART_STACKED_BAR = "stacked-bar"
CHART_BIAXIAL_BAR = "biaxial-bar"
CHART_SIGN_AREA = "area-fill-by-value"

CHART_TYPES = (
    CHART_KPI, CHART_BAR, CHART_LINE, CHART_AREA, CHART_PIE, CHART_FUNNEL,
    CHART_HEATMAP, CHART_STACKED_BAR, CHART_BIAXIAL_BAR, CHART_SIGN_AREA,
)

PALETTE = (
    "#8884d8", "#82ca9d", "#ffc658", "#ff7c7c",
    "#8dd1e1", "#a4de6c", "#d0ed57", "#ffa07a",
)

INDEX_KEY = "index"

_NET_NAME_RE = re.compile(r"(?:^|[_\s])(net|delta|change|growth)(?:[_\s]|$)", re.IGNORECASE)
_BAR_FAMILY = {CHART_BAR, CHART_STACKED_BAR, CHART_BIAXIAL_BAR, CHART_KPI, CHART_PIE, CHART_FUNNEL, CHART_HEATMAP}


@dataclass(frozen=True)
class ChartSpec:
    """Describes how a set of result rows should be visualised."""
    type: str
    title: str
    x_key: str
    y_keys: tuple[str, ...]
    rows: tuple[dict[str, Any], ...] = ()
    formatting: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    archetype: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "x_key": self.x_key,
            "y_keys": list(self.y_keys),
            "rows": [dict(r) for r in self.rows],
            "formatting": self.formatting,
            "reason": self.reason,
            "archetype": self.archetype,
            "row_count": len(self.rows),
        }


# ── Shape detection ─────────────────────────────────────

def is_net_metric(measure: str, rows: list[dict[str, Any]]) -> bool:
    """Net/delta/change naming, or observed values of both signs."""
    if _NET_NAME_RE.search(measure):
        return True
    values = [r.get(measure) for r in rows]
    numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return any(v > 0 for v in numbers) and any(v < 0 for v in numbers)


def pivot_rows(
    rows: list[dict[str, Any]],
    x_key: str,
    series_key: str,
    measure: str,
) -> tuple[list[dict[str, Any]], list[str]]:
    """Long -> wide: one row per *x_key*, one column per distinct *series_key* value.

    Series keep first-seen order; missing cells are left out rather than zero-filled.
    """
    series: list[str] = []
    by_x: dict[Any, dict[str, Any]] = {}
    for row in rows:
        x = row.get(x_key)
        s = str(row.get(series_key))
        if s not in series:
            series.append(s)
        wide = by_x.setdefault(x, {x_key: x})
        wide[s] = row.get(measure)
    return list(by_x.values()), series


# ── Formatting ──────────────────────────────────────────

def _format_hint(measure: str, catalog: SemanticCatalog | None) -> dict[str, Any]:
    entry = catalog.resolve_measure(measure) if catalog is not None else None
    if entry is None:
        return {"type": "number", "decimals": 0}
    hint: dict[str, Any] = {"type": entry.format_hint, "decimals": entry.decimals}
    if entry.currency:
        hint["currency"] = entry.currency
    return hint


def format_value(value: Any, hint: dict[str, Any] | None = None) -> str:
    """Render a number with its format hint: ``$1,234.50``, ``12.5%``, ``1,234``."""
    if value is None:
        return ""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return str(value)
    hint = hint or {}
    decimals = int(hint.get("decimals", 0))
    kind = hint.get("type", "number")
    text = f"{abs(value):,.{decimals}f}"
    sign = "-" if value < 0 else ""
    if kind == "currency":
        symbol = "$" if hint.get("currency", "USD") == "USD" else f"{hint['currency']} "
        return f"{sign}{symbol}{text}"
    if kind == "percentage":
        return f"{sign}{text}%"
    return f"{sign}{text}"


def build_title(measures: list[str], dimensions: list[str]) -> str:
    """``Total Revenue & Session Count by Traffic Source``."""
    title = " & ".join(format_label(m) for m in measures) or "Rows"
    if dimensions:
        title += " by " + " by ".join(format_label(d) for d in dimensions)
    return title


# ── Chart construction ──────────────────────────────────

def build_chart_spec(
    visualization: VisualizationSpec,
    rows: list[dict[str, Any]],
    catalog: SemanticCatalog | None = None,
    chart_type: str | None = None,
    title: str | None = None,
) -> ChartSpec:
    """Build the chart for *rows* from a classified query.

    Parameters
    ----------
    visualization : VisualizationSpec
        Output of ``classify`` for the query's dimensions and measures.
    rows : list[dict]
        Sanitized result rows keyed by output alias.
    catalog : SemanticCatalog, optional
        Source of per-measure format hints.
    chart_type : str, optional
        Force a recommendation type instead of the top-ranked one; the
        shape overrides still apply.
    title : str, optional
        Override the generated title.
    """
    dims = list(visualization.dimensions)
    measures = list(visualization.measures)
    rec = visualization.primary
    if chart_type is not None:
        rec = next((r for r in visualization.recommendations if r.type == chart_type), rec)
        chart = chart_type
    else:
        chart = rec.type
    reason = rec.reason

    data = [dict(r) for r in rows]
    x_key = dims[0] if dims else INDEX_KEY
    if not dims:
        data = [{INDEX_KEY: i, **r} for i, r in enumerate(data)]
    y_keys = list(measures)

    formats = {m: _format_hint(m, catalog) for m in measures}
    formatting: dict[str, Any] = {
        "stacked": False,
        "show_legend": len(measures) > 1,
        "is_time_series": visualization.archetype == TIME_SERIES,
    }

    # ── Sign-filled area for net values over time ───────
    if (
        visualization.archetype == TIME_SERIES
        and len(measures) == 1
        and is_net_metric(measures[0], data)
    ):
        chart = CHART_SIGN_AREA
        reason = f"{format_label(measures[0])} moves above and below zero; fill by sign"
        formatting["positive_color"] = PALETTE[1]
        formatting["negative_color"] = PALETTE[3]

    # ── Pivot: 2 dims + 1 measure ───────────────────────
    elif len(dims) == 2 and len(measures) == 1:
        data, y_keys = pivot_rows(data, dims[0], dims[1], measures[0])
        formats = {s: formats[measures[0]] for s in y_keys}
        formatting["series_key"] = dims[1]
        formatting["show_legend"] = True
        if visualization.archetype == BREAKDOWN:
            chart = CHART_STACKED_BAR
            formatting["stacked"] = True

    # ── Dual axis: 1 dim + 2 measures ───────────────────
    elif len(dims) == 1 and len(measures) == 2:
        if chart in _BAR_FAMILY:
            chart = CHART_BIAXIAL_BAR
        formatting["axes"] = {measures[0]: "y", measures[1]: "y1"}
        reason = f"{reason}; measures use independent value axes"

    formatting["format"] = formats
    formatting["colors"] = {key: PALETTE[i % len(PALETTE)] for i, key in enumerate(y_keys)}
    if chart == CHART_STACKED_BAR:
        formatting["stacked"] = True

    spec = ChartSpec(
        type=chart,
        title=title or build_title(measures, dims),
        x_key=x_key,
        y_keys=tuple(y_keys),
        rows=tuple(data),
        formatting=formatting,
        reason=reason,
        archetype=visualization.archetype,
    )
    logger.debug("Chart selected type=%s x=%s y=%s", spec.type, spec.x_key, list(spec.y_keys))
    return spec


def build_alternatives(
    visualization: VisualizationSpec,
    rows: list[dict[str, Any]],
    catalog: SemanticCatalog | None = None,
) -> list[ChartSpec]:
    """Chart specs for the lower-ranked recommendations."""
    return [
        build_chart_spec(visualization, rows, catalog, chart_type=rec.type)
        for rec in visualization.recommendations[1:]
    ]


def suggest_chart(
    dimensions: list[str],
    measures: list[str],
    rows: list[dict[str, Any]],
    catalog: SemanticCatalog | None = None,
) -> ChartSpec:
    """Classify then build in one call."""
    return build_chart_spec(classify(dimensions, measures, catalog), rows, catalog)
