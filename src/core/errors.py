"""
Exception taxonomy for the semantic query layer.

  CatalogError        -- malformed catalog, rejected at registration time
  CompileError        -- programmer-authored QuerySpec cannot be compiled
    UnknownAlias      -- alias not present in the table's catalog
  ExecutionError      -- engine failure / unsafe SQL / generator output without SELECT
  GenerationExhausted -- orchestrator retry budget spent (terminal)

Validation problems are *not* exceptions: they are returned as
``ValidationError`` records by ``src.governance.validator``.
"""
from __future__ import annotations

from typing import Any


class CatalogError(ValueError):
    def __init__(self, table: str, problems: list[str]):
        self.table = table
        self.problems = list(problems)
        detail = "; ".join(self.problems) if self.problems else "unknown problem"
        super().__init__(f"Catalog for table '{table}' rejected: {detail}")


class CompileError(ValueError):
    pass


class UnknownAlias(CompileError):
    def __init__(self, alias: str, table: str, kind: str):
        self.alias = alias
        self.table = table
        self.kind = kind  # dimension | measure
        super().__init__(f"Unknown {kind} alias '{alias}' for table '{table}'")


class ExecutionError(RuntimeError):
    def __init__(self, message: str, sql: str = ""):
        self.sql = sql
        super().__init__(message)


class UnsafeSQLError(ExecutionError):
    def __init__(self, violations: list[str], sql: str = ""):
        self.violations = list(violations)
        super().__init__("Unsafe SQL: " + " ".join(self.violations), sql=sql)


class GenerationExhausted(RuntimeError):
    """Raised when every generation attempt failed validation or execution."""

    suggestion = "Try again with a more capable generation backend."

    def __init__(
        self,
        attempts: int,
        cause: str,
        last_error_kind: str,
        error_kinds: list[str] | None = None,
        last_sql: str = "",
        last_error: str = "",
        metrics: Any = None,
    ):
        self.attempts = attempts
        self.cause = cause  # validation | execution
        self.last_error_kind = last_error_kind
        self.error_kinds = list(error_kinds or [])
        self.last_sql = last_sql
        self.last_error = last_error
        self.metrics = metrics
        super().__init__(
            f"SQL generation failed after {attempts} attempt(s) "
            f"({cause} failure, last error: {last_error_kind}). {self.suggestion}"
        )
