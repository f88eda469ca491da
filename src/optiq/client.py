"""QueryClient - the session-scoped handle over store, backend and session.

Provides:
- query(): cached read with stale-time freshness and stampede protection
- state(): what a UI renders for a key (value plus loading/stale flags)
- execute() / mutate(): optimistic mutations (raising / result-returning)
- get/set/invalidate/remove escape hatches onto the CacheStore
- realtime(): a RealtimeBridge feeding pushed row changes into the cache
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from optiq.auth import SessionProvider, StaticSession
from optiq.backends.base import RemoteBackend
from optiq.duration import backoff_delay, parse_duration
from optiq.errors import OptiqError, TransportFailure
from optiq.keys import KeyTarget, serialize_key
from optiq.mutation import Mutation, MutationRunner
from optiq.realtime import ChangeFeed, RealtimeBridge
from optiq.store import CacheStore
from optiq.types import (
    CacheKey,
    Duration,
    Identity,
    MutationResult,
    Notice,
    QueryState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class QueryClient:
    """Cache-backed reads and optimistic writes for one application session."""

    def __init__(
        self,
        *,
        store: CacheStore,
        backend: RemoteBackend,
        session: SessionProvider,
        notify: Callable[[Notice], None] | None = None,
        retry: int = 0,
        retry_base: Duration = "1s",
        retry_cap: Duration = "30s",
    ) -> None:
        self._store = store
        self._backend = backend
        self._session = session
        self._notify = notify
        self._retry = retry
        self._retry_base = parse_duration(retry_base)
        self._retry_cap = parse_duration(retry_cap)
        self._in_flight: dict[CacheKey, asyncio.Future[Any]] = {}
        self._generations: dict[CacheKey, int] = {}
        self._runner = MutationRunner(
            store, backend, session, on_touch=self._supersede_fetches
        )

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def backend(self) -> RemoteBackend:
        return self._backend

    @property
    def session(self) -> SessionProvider:
        return self._session

    def identity(self) -> Identity | None:
        return self._session.current_identity()

    async def query(
        self,
        key: CacheKey,
        fn: Callable[[], Awaitable[T]],
        *,
        stale_time: Duration | None = None,
        retry: int | None = None,
        force: bool = False,
    ) -> T:
        """Return the cached value while fresh, otherwise fetch and store it.

        Concurrent calls for one key share a single fetch. A fetch that
        lands after a mutation touched the key is not written to the cache.
        """
        if not force and not self._store.is_stale(key):
            return self._store.get_value(key)  # type: ignore[no-any-return]

        attempts = self._retry if retry is None else retry

        async def fetch() -> T:
            generation = self._generations.get(key, 0)
            value = await self._fetch_with_retry(fn, attempts)
            if self._generations.get(key, 0) != generation:
                logger.debug("discarding superseded fetch of %s", serialize_key(key))
                return self._store.get_value(key, value)  # type: ignore[no-any-return]
            self._store.set(key, value, stale_time=stale_time)
            return value

        return await self._coalesce(key, fetch)

    def state(self, key: CacheKey) -> QueryState[Any]:
        entry = self._store.get(key)
        return QueryState(
            data=None if entry is None else entry.value,
            is_loading=key in self._in_flight,
            is_stale=self._store.is_stale(key),
            updated_at=None if entry is None else entry.updated_at,
        )

    async def execute(self, mutation: Mutation[R], /, **request: Any) -> R:
        """Run a mutation; errors propagate after rollback."""
        return await self._runner.execute(mutation, **request)

    async def mutate(self, mutation: Mutation[R], /, **request: Any) -> MutationResult[R]:
        """Run a mutation for the UI: never raises, always carries a message."""
        try:
            value = await self._runner.execute(mutation, **request)
        except Exception as e:
            message = mutation.error_message(e, **request)
            if not isinstance(e, OptiqError):
                logger.error("%s raised unexpectedly", mutation.name, exc_info=True)
            self._emit("error", message)
            return MutationResult(ok=False, error=e, message=message)

        message = mutation.success_message(value, **request)
        if message:
            self._emit("success", message)
        return MutationResult(ok=True, value=value, message=message)

    def get_query_data(self, key: CacheKey, default: Any = None) -> Any:
        return self._store.get_value(key, default)

    def set_query_data(self, key: CacheKey, value: Any) -> None:
        self._supersede_fetches([key])
        self._store.set(key, value)

    def invalidate(self, target: KeyTarget, *, exact: bool = False) -> list[CacheKey]:
        return self._store.invalidate(target, exact=exact)

    def remove(self, target: KeyTarget, *, exact: bool = False) -> list[CacheKey]:
        return self._store.remove(target, exact=exact)

    def realtime(self, feed: ChangeFeed) -> RealtimeBridge:
        """A bridge from ``feed`` into this client's cache.

        Pushed rows supersede reads already in flight for the same key.
        """
        return RealtimeBridge(self._store, feed, on_touch=self._supersede_fetches)

    async def close(self) -> None:
        """Disconnect from the backend."""
        await self._backend.close()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _emit(self, level: str, message: str) -> None:
        if self._notify is not None:
            self._notify(Notice(level=level, message=message))

    def _supersede_fetches(self, keys: list[CacheKey]) -> None:
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1

    async def _fetch_with_retry(self, fn: Callable[[], Awaitable[T]], attempts: int) -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except TransportFailure:
                if attempt >= attempts:
                    raise
                delay = backoff_delay(attempt, base=self._retry_base, cap=self._retry_cap)
                logger.debug("retrying read in %dms (attempt %d)", delay, attempt + 1)
                await asyncio.sleep(delay / 1000)
                attempt += 1

    async def _coalesce(self, key: CacheKey, fetch: Callable[[], Awaitable[T]]) -> T:
        """Coalesce concurrent requests for same key (stampede protection)."""
        existing = self._in_flight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)  # type: ignore[no-any-return]

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved; waiters (if any) re-raise it themselves
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._in_flight[key]


def create_client(
    *,
    backend: RemoteBackend,
    session: SessionProvider | None = None,
    default_stale_time: Duration = 0,
    max_items: int | None = None,
    notify: Callable[[Notice], None] | None = None,
    retry: int = 0,
) -> QueryClient:
    """Create a query client with its own cache store.

    Args:
        backend: Remote data service backend
        session: Authentication boundary (default: signed-out StaticSession)
        default_stale_time: Freshness window for reads without their own
        max_items: Optional LRU bound on cached keys
        notify: Receives a Notice for every user-facing mutation message
        retry: Read retries on TransportFailure (mutations never retry)

    Returns:
        QueryClient with query, state, execute, mutate and cache helpers
    """
    if retry < 0:
        raise ValueError("retry must be >= 0")
    if max_items is not None and max_items <= 0:
        raise ValueError("max_items must be positive")

    store = CacheStore(default_stale_time=default_stale_time, max_items=max_items)
    return QueryClient(
        store=store,
        backend=backend,
        session=session if session is not None else StaticSession(),
        notify=notify,
        retry=retry,
    )


__all__ = ["QueryClient", "create_client"]
