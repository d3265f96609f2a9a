"""
Small shared helpers: wall-clock timing and label formatting.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Record elapsed wall-clock milliseconds into the yielded dict."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def format_label(name: str) -> str:
    """``total_revenue`` -> ``Total Revenue``."""
    return " ".join(word.capitalize() for word in name.replace("_", " ").split())
