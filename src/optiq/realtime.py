"""Realtime reconciliation as a message-passing channel.

Row changes pushed by the remote service arrive on a ``ChangeFeed``.
A ``RealtimeBridge`` routes each change to ``ChangeEvent`` values and
applies them through the same ``CacheStore`` API mutations use, so there
is a single writer surface regardless of what triggered the write.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from optiq.keys import serialize_key
from optiq.store import CacheStore
from optiq.types import CacheKey

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True, slots=True)
class RowChange:
    """One pushed row change: INSERT, UPDATE or DELETE on a table."""

    table: str
    event: str
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Either a new value for a key or an invalidation of it."""

    key: CacheKey
    value: Any = None
    invalidate: bool = False


Route = Callable[[RowChange, CacheStore], Iterable[ChangeEvent]]


class ChangeFeed:
    """Unbounded async queue of row changes."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, change: RowChange) -> None:
        if self._closed:
            raise RuntimeError("ChangeFeed is closed")
        self._queue.put_nowait(change)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def take_nowait(self) -> list[RowChange]:
        """Remove and return every change already queued."""
        taken: list[RowChange] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(item)
                break
            taken.append(item)
        return taken

    async def __aiter__(self) -> AsyncIterator[RowChange]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class RealtimeBridge:
    """Consumes a ChangeFeed and applies routed events to a CacheStore."""

    def __init__(
        self,
        store: CacheStore,
        feed: ChangeFeed,
        *,
        on_touch: Callable[[list[CacheKey]], None] | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._on_touch = on_touch
        self._routes: dict[str, list[Route]] = {}

    def route(self, table: str, handler: Route) -> Callable[[], None]:
        """Register a handler for a table; returns a function that removes it."""
        self._routes.setdefault(table, []).append(handler)

        def unroute() -> None:
            handlers = self._routes.get(table, [])
            if handler in handlers:
                handlers.remove(handler)

        return unroute

    def apply(self, event: ChangeEvent) -> None:
        # a fetch already in flight must not overwrite a pushed row
        if self._on_touch is not None:
            self._on_touch([event.key])
        if event.invalidate:
            self._store.invalidate(event.key, exact=True)
        else:
            self._store.set(event.key, event.value)
        logger.debug(
            "realtime %s %s",
            "invalidate" if event.invalidate else "set",
            serialize_key(event.key),
        )

    def dispatch(self, change: RowChange) -> int:
        """Route one change and apply its events; returns events applied."""
        applied = 0
        for handler in list(self._routes.get(change.table, [])):
            for event in handler(change, self._store):
                self.apply(event)
                applied += 1
        return applied

    async def run(self) -> None:
        """Apply changes until the feed is closed."""
        async for change in self._feed:
            try:
                self.dispatch(change)
            except Exception:
                logger.exception("failed to apply %s on %s", change.event, change.table)

    def drain(self) -> int:
        """Apply every change already queued without waiting for more."""
        return sum(self.dispatch(change) for change in self._feed.take_nowait())


__all__ = ["ChangeEvent", "ChangeFeed", "RealtimeBridge", "Route", "RowChange"]
