"""
QuerySpec -- the alias-based request the compiler turns into SQL.
"""
from __future__ import annotations

from typing import Union

from pydantic import BaseModel, Field, field_validator


class QuerySpec(BaseModel):
    """Dimensions and measures by catalog alias, plus free-text SQL fragments."""

    dimensions: list[str] = Field(default_factory=list, description="Group-by dimension aliases, in output order")
    measures: list[str] = Field(default_factory=list, description="Measure aliases, in output order")
    filters: list[str] = Field(
        default_factory=list,
        description="Raw WHERE fragments, ANDed together, e.g. \"country = 'US'\"",
    )
    order_by: list[Union[int, str]] = Field(
        default_factory=list,
        description="Positional index or alias, optionally suffixed with ASC/DESC",
    )
    limit: int | None = Field(None, ge=1, description="Maximum rows to return")

    @field_validator("dimensions", "measures")
    @classmethod
    def _strip_aliases(cls, value: list[str]) -> list[str]:
        return [v.strip() for v in value if v and v.strip()]

    @property
    def is_empty(self) -> bool:
        return not self.dimensions and not self.measures
