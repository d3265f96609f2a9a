"""SQLAlchemy engine factory for the analytical SQL engine.

Defaults to an in-process DuckDB database (``duckdb:///:memory:`` via
duckdb-engine).  In-memory databases are bound to a single shared
connection so every thread sees the same tables.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engines: dict[str, Engine] = {}


def _is_in_memory(url: str) -> bool:
    return url.endswith(":memory:") or url.rstrip("/").endswith(("duckdb:", "sqlite:"))


def get_engine(database_url: str | None = None) -> Engine:
    """Return the shared engine for *database_url* (lazy-created, cached per URL)."""
    url = database_url or get_settings().database_url
    engine = _engines.get(url)
    if engine is None:
        kwargs: dict = {"echo": False, "pool_pre_ping": True}
        if _is_in_memory(url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        _engines[url] = engine
        logger.info("DB engine created  url=%s", engine.url.render_as_string(hide_password=True))
    return engine


@contextmanager
def engine_connection(engine: Engine | None = None) -> Generator[Connection, None, None]:
    """Yield a pooled connection; it is returned to the pool on exit."""
    conn = (engine or get_engine()).connect()
    try:
        yield conn
    finally:
        conn.close()
