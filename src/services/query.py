"""Row filters shared by the row stores and the change feed.

A :class:`Filter` renders to a PostgREST query parameter
(``district=eq.Hyderabad``) for the Supabase gateway and evaluates
directly against a row dict for the local backend and realtime
subscriptions, so both paths agree on matching semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Iterable, Literal

Op = Literal["eq", "gte", "lte"]

# (column, descending)
OrderBy = tuple[str, bool]

_OPS: Final[frozenset[str]] = frozenset({"eq", "gte", "lte"})


@dataclass(frozen=True, slots=True)
class Filter:
    column: str
    op: Op
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")

    def matches(self, row: dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return actual == self.value
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        return actual <= self.value

    def to_param(self) -> tuple[str, str]:
        value = self.value
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif value is None:
            return self.column, "is.null"
        return self.column, f"{self.op}.{value}"


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def matches_all(row: dict[str, Any], filters: Iterable[Filter]) -> bool:
    return all(f.matches(row) for f in filters)


def sort_rows(rows: list[dict[str, Any]], order_by: Iterable[OrderBy]) -> list[dict[str, Any]]:
    """Stable multi-key sort; ``None`` values sort first in ascending order."""
    result = list(rows)
    for column, descending in reversed(list(order_by)):
        result.sort(
            key=lambda r: (r.get(column) is not None, r.get(column) if r.get(column) is not None else ""),
            reverse=descending,
        )
    return result
