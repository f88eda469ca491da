"""Base protocol for the remote data service."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

Row = dict[str, Any]


@dataclass(frozen=True, slots=True)
class Filter:
    """One column condition, e.g. ``Filter("user_id", "eq", "u1")``."""

    column: str
    op: str  # eq | neq | in | lt | lte | gt | gte | is | ilike | or
    value: Any

    def test(self, row: Row) -> bool:
        if self.op == "or":
            return any(f.test(row) for f in self.value)
        actual = row.get(self.column)
        if self.op == "ilike":
            return actual is not None and _like(self.value).fullmatch(str(actual)) is not None
        if self.op == "eq":
            return bool(actual == self.value)
        if self.op == "neq":
            # SQL semantics: NULL is neither equal nor unequal
            return actual is not None and bool(actual != self.value)
        if self.op == "in":
            return actual in self.value
        if self.op == "is":
            return actual is self.value
        if actual is None:
            return False
        if self.op == "lt":
            return bool(actual < self.value)
        if self.op == "lte":
            return bool(actual <= self.value)
        if self.op == "gt":
            return bool(actual > self.value)
        if self.op == "gte":
            return bool(actual >= self.value)
        raise ValueError(f"Unknown filter op: {self.op!r}")


def _like(pattern: str) -> re.Pattern[str]:
    """SQL LIKE pattern (``%`` and ``_`` wildcards) as a case-insensitive regex."""
    parts = (".*" if c == "%" else "." if c == "_" else re.escape(c) for c in pattern)
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, "ilike", pattern)


def any_of(*filters: Filter) -> Filter:
    """Match rows satisfying at least one of ``filters``."""
    return Filter("or", "or", tuple(filters))


@dataclass(frozen=True, slots=True)
class Order:
    column: str
    ascending: bool = True


@runtime_checkable
class RemoteBackend(Protocol):
    """Async per-table CRUD, RPC and counting against the remote store.

    Implementations raise the errors in ``optiq.errors``.
    """

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order: Order | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        """Return matching rows."""
        ...

    async def insert(self, table: str, rows: Row | Sequence[Row]) -> list[Row]:
        """Insert rows and return them as stored."""
        ...

    async def update(
        self, table: str, values: Row, *, filters: Sequence[Filter]
    ) -> list[Row]:
        """Update matching rows and return them."""
        ...

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]:
        """Delete matching rows and return them."""
        ...

    async def upsert(
        self,
        table: str,
        rows: Row | Sequence[Row],
        *,
        on_conflict: Sequence[str],
    ) -> list[Row]:
        """Insert or merge rows by a unique column set."""
        ...

    async def rpc(self, function: str, params: Row) -> Any:
        """Call a remote procedure."""
        ...

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        """Count matching rows."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


async def select_one(
    backend: RemoteBackend,
    table: str,
    *,
    filters: Sequence[Filter],
    columns: str = "*",
) -> Row | None:
    """Return the first matching row or None (``maybeSingle``)."""
    rows = await backend.select(table, filters=filters, columns=columns, limit=1)
    return rows[0] if rows else None
