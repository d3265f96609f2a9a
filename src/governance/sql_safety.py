"""
Deterministic SQL safety checks, run on generated SQL just before execution.

Checks performed:
  1. SQL must be a single SELECT (or WITH ... SELECT) statement
  2. No dangerous keywords (DROP, ALTER, INSERT, UPDATE, DELETE, COPY, ATTACH ...)
  3. No SQL comments
  4. Every FROM / JOIN target is the catalog's own table (CTE names excepted)
"""
from __future__ import annotations

import re

from src.governance.semantic_loader import SemanticCatalog
from src.core.logging import get_logger

logger = get_logger(__name__)

# ── Compiled patterns ────────────────────────────────────

_DANGEROUS_KW = re.compile(
    r"\b(DROP|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|MERGE|GRANT|REVOKE|"
    r"CREATE|EXECUTE|EXEC|CALL|COPY|ATTACH|DETACH|INSTALL|LOAD|PRAGMA|EXPORT|IMPORT)\b",
    re.IGNORECASE,
)

_MULTI_STMT = re.compile(r";\s*\S")  # semicolon followed by another statement

_COMMENT_INLINE = re.compile(r"--")
_COMMENT_BLOCK = re.compile(r"/\*")

_FROM_JOIN_RE = re.compile(
    r'\b(?:FROM|JOIN)\s+((?:"[^"]+"|\w+)(?:\s*\.\s*(?:"[^"]+"|\w+))*)',
    re.IGNORECASE,
)

_CTE_NAME_RE = re.compile(r'(?:\bWITH|,)\s*("[^"]+"|\w+)\s+AS\s*\(', re.IGNORECASE)

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_QUOTED_IDENT = re.compile(r'"(?:[^"]|"")*"')

_STATEMENT_START = re.compile(r"^(?:SELECT|WITH)\b", re.IGNORECASE)

# Functions whose argument syntax contains FROM, e.g. EXTRACT(YEAR FROM d)
_FROM_FUNCTIONS = {"EXTRACT", "SUBSTRING", "TRIM", "OVERLAY", "POSITION"}


def _table_name(ref: str) -> str:
    return ".".join(p.strip().strip('"') for p in ref.split("."))


def _enclosing_function(sql: str, idx: int) -> str | None:
    """Name of the function call whose parentheses contain position *idx*."""
    depth = 0
    for i in range(idx - 1, -1, -1):
        ch = sql[i]
        if ch == ")":
            depth += 1
        elif ch == "(":
            if depth == 0:
                m = re.search(r"(\w+)\s*$", sql[:i])
                return m.group(1).upper() if m else None
            depth -= 1
    return None


def check_sql_safety(sql: str, catalog: SemanticCatalog) -> list[str]:
    """Return a list of safety violations (empty list = safe).

    Parameters
    ----------
    sql : str
        The SQL query about to be executed.
    catalog : SemanticCatalog
        Catalog of the only table the query may read.
    """
    errors: list[str] = []
    sql_stripped = _STRING_LITERAL.sub("''", sql.strip().rstrip(";").strip())
    # same-length mask keeps positions aligned with sql_stripped
    keywords_only = _QUOTED_IDENT.sub(lambda q: '"' + "_" * (len(q.group(0)) - 2) + '"', sql_stripped)

    # ── 1. Must start with SELECT (or WITH … SELECT) ──────────────
    if not _STATEMENT_START.match(sql_stripped):
        errors.append("SQL must be a SELECT statement.")

    # ── 2. No multi-statement ────────────────────────
    if _MULTI_STMT.search(keywords_only):
        errors.append("Multi-statement SQL is not allowed (found ';' followed by another statement).")

    # ── 3. No dangerous keywords ─────────────────────
    m = _DANGEROUS_KW.search(keywords_only)
    if m:
        errors.append(f"Dangerous keyword detected: '{m.group(1).upper()}'.")

    # ── 4. No SQL comments ───────────────────────────
    if _COMMENT_INLINE.search(keywords_only):
        errors.append("Inline comments (--) are not allowed.")
    if _COMMENT_BLOCK.search(keywords_only):
        errors.append("Block comments (/* */) are not allowed.")

    # ── 5. Only the catalog table ────────────────────
    cte_names = {_table_name(n).lower() for n in _CTE_NAME_RE.findall(sql_stripped)}
    allowed = {catalog.table.lower(), catalog.table.split(".")[-1].lower()}
    for ref_m in _FROM_JOIN_RE.finditer(keywords_only):
        if _enclosing_function(keywords_only, ref_m.start()) in _FROM_FUNCTIONS:
            continue
        name = _table_name(sql_stripped[ref_m.start(1): ref_m.end(1)])
        if name.lower() in cte_names or name.lower() in allowed:
            continue
        errors.append(f"Table '{name}' is not the queried table '{catalog.table}'.")

    if errors:
        logger.warning("SQL safety violations: %s", errors)
    return errors
