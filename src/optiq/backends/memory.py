"""In-memory remote backend for tests, demos and offline use."""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from optiq.backends.base import Filter, Order, Row
from optiq.errors import Conflict, NotFound
from optiq.realtime import ChangeFeed, RowChange

RpcHandler = Callable[["MemoryBackend", Row], Awaitable[Any]]


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _project(row: Row, columns: str) -> Row:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row.get(c)) for c in wanted}


class MemoryBackend:
    """Tables held as lists of dict rows, with unique constraints and RPCs."""

    def __init__(
        self,
        *,
        unique: dict[str, Sequence[Sequence[str]]] | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._tables: dict[str, list[Row]] = {}
        self._unique = {t: [tuple(c) for c in cs] for t, cs in (unique or {}).items()}
        self._rpcs: dict[str, RpcHandler] = {}
        self._ids = itertools.count(1)
        self._feed = feed
        self.calls: list[tuple[str, str]] = []

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def seed(self, table: str, rows: Sequence[Row]) -> list[Row]:
        """Load rows directly, bypassing constraints and change events."""
        stored = [self._with_defaults(dict(r)) for r in rows]
        self._tables.setdefault(table, []).extend(stored)
        return copy.deepcopy(stored)

    def rows(self, table: str) -> list[Row]:
        return copy.deepcopy(self._tables.get(table, []))

    def register_rpc(self, name: str, handler: RpcHandler) -> None:
        self._rpcs[name] = handler

    # -------------------------------------------------------------------------
    # RemoteBackend
    # -------------------------------------------------------------------------

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
        await self._tick("select", table)
        found = self._match(table, filters)
        if order is not None:
            found.sort(
                key=lambda r: (r.get(order.column) is None, r.get(order.column)),
                reverse=not order.ascending,
            )
        start = offset or 0
        end = None if limit is None else start + limit
        return [_project(r, columns) for r in found[start:end]]

    async def insert(self, table: str, rows: Row | Sequence[Row]) -> list[Row]:
        await self._tick("insert", table)
        batch = [rows] if isinstance(rows, dict) else list(rows)
        stored: list[Row] = []
        for row in batch:
            new = self._with_defaults(dict(row))
            self._check_unique(table, new)
            self._tables.setdefault(table, []).append(new)
            stored.append(new)
            self._publish(table, "INSERT", new=new)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, values: Row, *, filters: Sequence[Filter]
    ) -> list[Row]:
        await self._tick("update", table)
        changed: list[Row] = []
        for row in self._match(table, filters):
            old = copy.deepcopy(row)
            row.update(copy.deepcopy(values))
            changed.append(row)
            self._publish(table, "UPDATE", new=row, old=old)
        return copy.deepcopy(changed)

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]:
        await self._tick("delete", table)
        doomed = self._match(table, filters)
        ids = {id(r) for r in doomed}
        self._tables[table] = [r for r in self._tables.get(table, []) if id(r) not in ids]
        for row in doomed:
            self._publish(table, "DELETE", old=row)
        return copy.deepcopy(doomed)

    async def upsert(
        self,
        table: str,
        rows: Row | Sequence[Row],
        *,
        on_conflict: Sequence[str],
    ) -> list[Row]:
        await self._tick("upsert", table)
        batch = [rows] if isinstance(rows, dict) else list(rows)
        stored: list[Row] = []
        for row in batch:
            existing = next(
                (
                    r
                    for r in self._tables.get(table, [])
                    if all(r.get(c) == row.get(c) for c in on_conflict)
                ),
                None,
            )
            if existing is None:
                new = self._with_defaults(dict(row))
                self._tables.setdefault(table, []).append(new)
                stored.append(new)
                self._publish(table, "INSERT", new=new)
            else:
                old = copy.deepcopy(existing)
                existing.update(copy.deepcopy(row))
                stored.append(existing)
                self._publish(table, "UPDATE", new=existing, old=old)
        return copy.deepcopy(stored)

    async def rpc(self, function: str, params: Row) -> Any:
        await self._tick("rpc", function)
        handler = self._rpcs.get(function)
        if handler is None:
            raise NotFound(f"Unknown function: {function}", code="PGRST202")
        return await handler(self, params)

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        await self._tick("count", table)
        return len(self._match(table, filters))

    async def close(self) -> None:
        """Nothing to release for memory."""
        pass

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _tick(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        # Yield like a network call would
        await asyncio.sleep(0)

    def _match(self, table: str, filters: Sequence[Filter]) -> list[Row]:
        return [r for r in self._tables.get(table, []) if all(f.test(r) for f in filters)]

    def _with_defaults(self, row: Row) -> Row:
        row.setdefault("id", next(self._ids))
        row.setdefault("created_at", _iso_now())
        return row

    def _check_unique(self, table: str, row: Row) -> None:
        for columns in self._unique.get(table, []):
            for other in self._tables.get(table, []):
                if all(other.get(c) == row.get(c) for c in columns):
                    raise Conflict(
                        f"duplicate key value violates unique constraint on {table}",
                        code="23505",
                    )

    def _publish(self, table: str, event: str, *, new: Row | None = None, old: Row | None = None) -> None:
        if self._feed is None:
            return
        self._feed.publish(
            RowChange(
                table=table,
                event=event,
                new=copy.deepcopy(new) if new is not None else None,
                old=copy.deepcopy(old) if old is not None else None,
            )
        )
