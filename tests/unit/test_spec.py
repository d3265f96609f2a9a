"""
Unit tests -- smoke test for imports & QuerySpec.
"""
import pytest
from pydantic import ValidationError

from src.copilot.spec import QuerySpec


def test_query_spec_defaults():
    spec = QuerySpec()
    assert spec.dimensions == []
    assert spec.measures == []
    assert spec.filters == []
    assert spec.order_by == []
    assert spec.limit is None
    assert spec.is_empty


def test_query_spec_full():
    spec = QuerySpec(
        dimensions=["Traffic Source", "Device Type"],
        measures=["total_revenue"],
        filters=["country = 'US'"],
        order_by=["total_revenue DESC", 1],
        limit=50,
    )
    assert spec.dimensions == ["Traffic Source", "Device Type"]
    assert spec.order_by == ["total_revenue DESC", 1]
    assert spec.limit == 50
    assert not spec.is_empty


def test_aliases_stripped():
    spec = QuerySpec(dimensions=["  Country ", ""], measures=[" session_count"])
    assert spec.dimensions == ["Country"]
    assert spec.measures == ["session_count"]


def test_limit_must_be_positive():
    with pytest.raises(ValidationError):
        QuerySpec(measures=["session_count"], limit=0)
