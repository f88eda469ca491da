"""In-memory cache store keyed by CacheKey.

All operations are synchronous and never suspend, so within one event
loop two writes can never interleave. Invalidation marks entries stale
but keeps their data, so the last good value stays displayable until a
refetch lands.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from typing import Any

from optiq.duration import parse_duration
from optiq.keys import KeyTarget, matches, serialize_key
from optiq.types import CacheEntry, CacheKey, Duration, Snapshot

logger = logging.getLogger(__name__)

Listener = Callable[[CacheKey, "CacheEntry[Any] | None"], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class CacheStore:
    """Key-indexed store of last known server-derived values."""

    def __init__(
        self,
        *,
        default_stale_time: Duration = 0,
        max_items: int | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._entries: OrderedDict[CacheKey, CacheEntry[Any]] = OrderedDict()
        self._default_stale_time = parse_duration(default_stale_time)
        self._max_items = max_items
        self._clock = clock
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def now(self) -> int:
        return self._clock()

    def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get the entry for a key; None means never fetched or evicted."""
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)  # LRU touch
        return entry

    def get_value(self, key: CacheKey, default: Any = None) -> Any:
        entry = self.get(key)
        return default if entry is None else entry.value

    def set(
        self,
        key: CacheKey,
        value: Any,
        *,
        stale_time: Duration | None = None,
    ) -> CacheEntry[Any]:
        """Overwrite the value for a key and mark it fresh as of now."""
        if stale_time is not None:
            stale_ms = parse_duration(stale_time)
        elif key in self._entries:
            stale_ms = self._entries[key].stale_time
        else:
            stale_ms = self._default_stale_time

        entry: CacheEntry[Any] = CacheEntry(
            value=value,
            updated_at=self._clock(),
            stale_time=stale_ms,
        )
        self._write(key, entry)
        return entry

    def invalidate(self, target: KeyTarget, *, exact: bool = False) -> list[CacheKey]:
        """Mark matching entries stale without dropping their data.

        A key target matches itself and every key it prefixes unless
        ``exact`` is set; a callable target is used as a predicate.
        """
        hit = self.keys(target, exact=exact)
        for key in hit:
            entry = self._entries[key]
            if not entry.invalidated:
                self._write(
                    key,
                    CacheEntry(
                        value=entry.value,
                        updated_at=entry.updated_at,
                        stale_time=entry.stale_time,
                        invalidated=True,
                    ),
                    touch=False,
                )
        if hit:
            logger.debug("invalidated %d cache keys", len(hit))
        return hit

    def remove(self, target: KeyTarget, *, exact: bool = False) -> list[CacheKey]:
        """Delete matching entries."""
        hit = self.keys(target, exact=exact)
        for key in hit:
            del self._entries[key]
            self._notify(key, None)
        return hit

    def update(
        self,
        target: KeyTarget,
        updater: Callable[[Any], Any],
        *,
        exact: bool = False,
    ) -> list[CacheKey]:
        """Apply ``updater(old_value)`` to every matching entry.

        An updater returning its argument unchanged leaves the entry alone.
        """
        changed: list[CacheKey] = []
        for key in self.keys(target, exact=exact):
            old = self._entries[key].value
            new = updater(old)
            if new is old:
                continue
            self.set(key, new)
            changed.append(key)
        return changed

    def snapshot(self, key: CacheKey) -> Snapshot:
        return Snapshot(key=key, entry=self._entries.get(key))

    def restore(self, snapshot: Snapshot) -> None:
        """Put back exactly what a snapshot captured, absence included."""
        if snapshot.entry is None:
            if self._entries.pop(snapshot.key, None) is not None:
                self._notify(snapshot.key, None)
            return
        self._write(snapshot.key, snapshot.entry)

    def keys(self, target: KeyTarget | None = None, *, exact: bool = False) -> list[CacheKey]:
        if target is None:
            return list(self._entries)
        if not callable(target) and exact:
            return [target] if target in self._entries else []
        return [key for key in self._entries if matches(target, key, exact=exact)]

    def is_stale(self, key: CacheKey) -> bool:
        """True if the key is absent, invalidated, or past its stale time."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        return entry.invalidated or self._clock() - entry.updated_at >= entry.stale_time

    def items(self) -> Iterator[tuple[CacheKey, CacheEntry[Any]]]:
        return iter(list(self._entries.items()))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called on every write; returns unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        """Drop every entry."""
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key, None)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _write(self, key: CacheKey, entry: CacheEntry[Any], *, touch: bool = True) -> None:
        self._entries[key] = entry
        if touch:
            self._entries.move_to_end(key)
        if self._max_items and len(self._entries) > self._max_items:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("evicted %s", serialize_key(evicted))
            self._notify(evicted, None)
        self._notify(key, entry)

    def _notify(self, key: CacheKey, entry: CacheEntry[Any] | None) -> None:
        for listener in list(self._listeners):
            listener(key, entry)


__all__ = ["CacheStore"]
