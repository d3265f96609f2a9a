"""
SQL executor and row sanitization.

Generated queries run through ``SQLAlchemyEngine.execute`` which:
  1. Runs the blocking SQLAlchemy call in a worker thread (awaitable)
  2. Wraps the query in text()
  3. Converts engine-native values to plain Python / JSON-safe types
  4. Re-raises driver failures as ``ExecutionError``
"""
from __future__ import annotations

import asyncio
import datetime
import decimal
import uuid
from typing import Any, Iterable

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.core.errors import ExecutionError
from src.core.logging import get_logger
from src.core.utils import timer
from src.db.connection import engine_connection, get_engine

logger = get_logger(__name__)

# Largest integer a float (and a JS number) represents exactly
_MAX_SAFE_INT = 2 ** 53 - 1


def sanitize_value(val: Any) -> Any:
    """Convert engine types to plain, JSON-serialisable Python types."""
    if val is None or isinstance(val, bool):
        return val
    if isinstance(val, int):
        return float(val) if abs(val) > _MAX_SAFE_INT else val
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (bytes, bytearray, memoryview)):
        # little-endian integer over the first 8 bytes
        return int.from_bytes(bytes(val)[:8], "little")
    if isinstance(val, datetime.datetime):
        return val.isoformat()
    if isinstance(val, datetime.date):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    if isinstance(val, uuid.UUID):
        return str(val)
    return val


def sanitize_rows(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{key: sanitize_value(val) for key, val in row.items()} for row in rows]


def execute_sql(sql: str, engine: Engine | None = None) -> list[dict[str, Any]]:
    """Execute *sql* and return sanitized rows.

    Raises
    ------
    ExecutionError
        If the engine rejects or fails the query.
    """
    logger.info("Executing SQL (%d chars)", len(sql))
    try:
        with timer() as t, engine_connection(engine) as conn:
            # escaped colons stay literal instead of becoming bind parameters
            result = conn.execute(text(sql.replace(":", r"\:")))
            columns = list(result.keys())
            rows = [dict(zip(columns, row)) for row in result.fetchall()]
    except SQLAlchemyError as exc:
        message = str(getattr(exc, "orig", None) or exc)
        logger.warning("SQL execution failed: %s", message)
        raise ExecutionError(message, sql=sql) from exc

    logger.info("Returned %d rows in %d ms", len(rows), t["elapsed_ms"])
    return sanitize_rows(rows)


class SQLAlchemyEngine:
    """Awaitable ``execute(sql) -> rows`` adapter over a SQLAlchemy engine."""

    def __init__(self, engine: Engine | None = None):
        self._engine = engine or get_engine()

    @property
    def engine(self) -> Engine:
        return self._engine

    async def execute(self, sql: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(execute_sql, sql, self._engine)
