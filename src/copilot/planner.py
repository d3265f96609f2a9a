"""
Planner -- text-to-SQL generators and the prompts that drive them.

Two generators, both exposing ``async complete(prompt) -> text``:
  KeywordSQLGenerator → deterministic alias matching compiled through the
                        semantic catalog (no API key needed, great for tests)
  LLMSQLGenerator     → catalog-aware prompt sent through llm_client

The generation loop treats either as an untrusted source: whatever text it
returns goes through ``extract_sql`` and then the validator.
"""
from __future__ import annotations

import json
import re
from typing import Protocol

from src.copilot import llm_client
from src.copilot.spec import QuerySpec
from src.copilot.sql_generator import compile_query
from src.core.config import get_settings
from src.core.errors import ExecutionError
from src.core.logging import get_logger
from src.governance.semantic_loader import COUNT_SENTINEL, SemanticCatalog
from src.governance.validator import mask_literals

logger = get_logger(__name__)

ORIGINAL_REQUEST_MARKER = "ORIGINAL REQUEST:"


class SQLGenerator(Protocol):
    """External text-to-SQL collaborator."""

    requires_validation: bool

    async def complete(self, prompt: str) -> str: ...


# ── Prompts ──────────────────────────────────────────────

def build_generation_prompt(catalog: SemanticCatalog, request: str) -> str:
    """First-attempt prompt: table context, valid names, rules, then the question."""
    dims = "\n".join(
        f'  - {source} AS "{alias}"' for alias, source in catalog.describe_dimensions().items()
    )
    measures = "\n".join(
        f"  - {sql} AS {alias}" for alias, sql in catalog.describe_measures().items()
    )
    return (
        f"TABLE: {catalog.table}\n"
        f"DESCRIPTION: {catalog.description}\n\n"
        f"DIMENSIONS (group by these columns, name them with AS):\n{dims}\n\n"
        f"MEASURES (use exactly these aggregations and aliases):\n{measures}\n\n"
        "RULES:\n"
        "1. Write one DuckDB SELECT statement over this table only.\n"
        "2. Aliases are output names: never use an alias inside an aggregate or GROUP BY.\n"
        "3. Give every aggregate an AS alias from the list above.\n"
        "4. GROUP BY the dimension positions (1, 2, ...).\n"
        "5. Use CURRENT_DATE, not CURDATE() or NOW().\n"
        'Respond with JSON {"sql": "..."} or the bare SQL.\n\n'
        f"QUESTION: {request}"
    )


def build_retry_prompt(guidance: str, request: str) -> str:
    """Corrective prompt: guidance first, the user's own words last."""
    return f'{guidance}\n\n{ORIGINAL_REQUEST_MARKER} "{request}"'


def build_execution_retry_prompt(error: str, catalog: SemanticCatalog, request: str) -> str:
    measures = ", ".join(
        f"{sql} AS {alias}" for alias, sql in list(catalog.describe_measures().items())[:15]
    )
    dims = ", ".join(list(catalog.describe_dimensions().values())[:15])
    guidance = (
        f"The previous SQL failed to execute: {error}\n"
        f"TABLE: {catalog.table}\n"
        f"VALID DIMENSION COLUMNS: {dims}\n"
        f"VALID MEASURES: {measures}\n"
        "Return one corrected SELECT statement."
    )
    return build_retry_prompt(guidance, request)


def original_request(prompt: str) -> str:
    """The user's request inside a retry prompt, or *prompt* itself."""
    idx = prompt.rfind(ORIGINAL_REQUEST_MARKER)
    if idx == -1:
        return prompt
    return prompt[idx + len(ORIGINAL_REQUEST_MARKER):].strip().strip('"')


# ── SQL extraction ───────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json|sql)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_SELECT_UPPER_RE = re.compile(r"\bSELECT\b")
_SELECT_ANY_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)


def _find_select(text: str) -> str | None:
    """First SELECT statement in *text*, up to the first `;` outside quotes.

    An upper-case keyword wins over prose such as "I will select ...".
    """
    m = _SELECT_UPPER_RE.search(text) or _SELECT_ANY_RE.search(text)
    if m is None:
        return None
    statement = text[m.start():]
    end = mask_literals(statement).find(";")
    return statement if end == -1 else statement[:end]


def _json_sql(text: str) -> str | None:
    m = _JSON_OBJECT_RE.search(text)
    if m is None:
        return None
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    sql = data.get("sql") if isinstance(data, dict) else None
    return sql if isinstance(sql, str) else None


def extract_sql(text: str) -> str:
    """Pull the SQL out of raw generator output.

    Tries, in order: a JSON object with an ``sql`` key (fenced or not),
    then the first ``SELECT`` keyword up to a ``;`` outside string literals
    (or the end).  The ``;`` itself is dropped.

    Raises
    ------
    ExecutionError
        If the output contains no SELECT at all.
    """
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]
    for candidate in candidates:
        sql = _json_sql(candidate)
        if sql:
            text = sql
            break
    else:
        fenced = [c for c in candidates[:-1] if _find_select(c) is not None]
        if fenced:
            text = fenced[0]

    sql = _find_select(text)
    if sql is None:
        raise ExecutionError(f"Generator output contains no SELECT statement: {text[:120]!r}")
    return sql.strip()


# ── Keyword generator ────────────────────────────────────

_TOP_N_RE = re.compile(r"\btop\s+(\d+)\b", re.IGNORECASE)


def _mention_position(text: str, *names: str) -> int:
    best = -1
    for name in names:
        if not name:
            continue
        m = re.search(rf"(?<!\w){re.escape(name.lower())}(?!\w)", text)
        if m is not None and (best == -1 or m.start() < best):
            best = m.start()
    return best


class KeywordSQLGenerator:
    """Offline generator: finds catalog aliases mentioned in the request and compiles them.

    Retries see the same request (taken from the ``ORIGINAL REQUEST`` line), so
    this generator either succeeds on the first attempt or never does.
    """

    requires_validation = True

    def __init__(self, catalog: SemanticCatalog):
        self.catalog = catalog

    def plan(self, request: str) -> QuerySpec | None:
        q = request.lower()

        dims: list[tuple[int, str]] = []
        for alias in self.catalog.list_dimension_aliases():
            dim = self.catalog.resolve_dimension(alias)
            pos = _mention_position(q, alias, dim.source, dim.source.replace("_", " "))
            if pos != -1:
                dims.append((pos, alias))

        measures: list[tuple[int, str]] = []
        matched_sources: set[str] = set()
        for alias in self.catalog.list_measure_aliases():
            pos = _mention_position(q, alias, alias.replace("_", " "))
            if pos != -1:
                measures.append((pos, alias))
                matched_sources.add(self.catalog.resolve_measure(alias).source_field)

        # "interest events" -> first measure declared on the interest_events column
        for measure in self.catalog.measures.values():
            if measure.source in matched_sources or measure.source == COUNT_SENTINEL or not measure.entries:
                continue
            pos = _mention_position(q, measure.source, measure.source.replace("_", " "))
            if pos != -1:
                measures.append((pos, measure.entries[0].alias))

        if not dims and not measures:
            return None
        if not measures:
            measures = [(0, self.catalog.list_measure_aliases()[0])]

        dim_aliases = [a for _, a in sorted(dims)]
        measure_aliases = [a for _, a in sorted(measures)]
        limit: int | None = None
        order_by: list[int | str] = []
        m = _TOP_N_RE.search(request)
        if m:
            limit = int(m.group(1))
            order_by = [f"{measure_aliases[0]} DESC"]

        return QuerySpec(
            dimensions=dim_aliases,
            measures=measure_aliases,
            order_by=order_by,
            limit=limit,
        )

    async def complete(self, prompt: str) -> str:
        request = original_request(prompt)
        spec = self.plan(request)
        if spec is None:
            logger.info("Keyword generator found no catalog names in request=%s", request[:80])
            return f"No {self.catalog.table} columns or measures match this request."
        return compile_query(spec, self.catalog) + ";"


# ── LLM generator ────────────────────────────────────────

class LLMSQLGenerator:
    """Generator backed by the configured LLM provider."""

    def __init__(
        self,
        catalog: SemanticCatalog,
        provider: str | None = None,
        requires_validation: bool = True,
    ):
        self.catalog = catalog
        self.provider = provider
        self.requires_validation = requires_validation

    async def complete(self, prompt: str) -> str:
        if ORIGINAL_REQUEST_MARKER not in prompt:
            prompt = build_generation_prompt(self.catalog, prompt)
        return await llm_client.complete(prompt, self.provider)


def default_generator(catalog: SemanticCatalog, provider: str | None = None) -> SQLGenerator:
    """Keyword generator in mock mode, otherwise the LLM generator."""
    provider = (provider or get_settings().llm_provider).lower()
    if provider == "mock":
        return KeywordSQLGenerator(catalog)
    return LLMSQLGenerator(catalog, provider=provider)
