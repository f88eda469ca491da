"""Optimistic mutation wrapper.

One generic runner executes every mutation the same way:

1. resolve the cache keys the request plausibly affects
2. snapshot each of them into a MutationContext
3. write the locally computed optimistic value
4. call the resource accessor (the only suspension point)
5. on success, store the authoritative value the accessor returned
6. on failure, restore every snapshot this invocation wrote
7. either way, invalidate aggregate keys that were not kept optimistic

Entity-specific behaviour lives in ``Mutation`` subclasses, which only
describe *what* to compute. Overlapping mutations on one key each restore
the snapshot they captured themselves; a later success can still overwrite
an earlier rollback, and that race is accepted rather than resolved.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, ClassVar, Generic, TypeVar

from optiq.auth import SessionProvider, require_identity
from optiq.backends.base import RemoteBackend
from optiq.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    Conflict,
    NotFound,
    OptiqError,
)
from optiq.keys import KeyTarget, serialize_key
from optiq.store import CacheStore
from optiq.types import CacheKey, Identity, MutationContext

logger = logging.getLogger(__name__)

R = TypeVar("R")
T = TypeVar("T")


class _Marker:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


# optimistic(): leave this key untouched
SKIP: Any = _Marker("SKIP")
# reconcile(): keep whatever the cache holds now
KEEP: Any = _Marker("KEEP")


class Mutation(Generic[R]):
    """Strategy describing one kind of write.

    Subclasses override the hooks they need; every hook receives the
    caller's identity (None only when ``requires_auth`` is False) and the
    request's keyword arguments.
    """

    name: ClassVar[str] = "mutation"
    requires_auth: ClassVar[bool] = True
    failure_message: ClassVar[str] = "처리에 실패했습니다."

    def authorize(self, store: CacheStore, identity: Identity | None, **request: Any) -> None:
        """Raise AuthorizationDenied when the cache already proves it."""

    def affected_keys(self, identity: Identity | None, **request: Any) -> Iterable[KeyTarget]:
        """Keys (or predicates over present keys) written optimistically."""
        return ()

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Mapping[CacheKey, Any],
        identity: Identity | None,
        **request: Any,
    ) -> Any:
        """New value for ``key``, or SKIP. ``current`` is None when absent."""
        return SKIP

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, **request: Any
    ) -> R:
        """The resource accessor call."""
        raise NotImplementedError

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: R,
        identity: Identity | None,
        **request: Any,
    ) -> Any:
        """Authoritative value for ``key`` after success, or KEEP."""
        return KEEP

    def invalidates(self, identity: Identity | None, **request: Any) -> Iterable[KeyTarget]:
        """Aggregate keys marked stale once the mutation settles."""
        return ()

    def on_error_invalidates(
        self, identity: Identity | None, error: BaseException, **request: Any
    ) -> Iterable[KeyTarget]:
        return ()

    def on_success_invalidates(
        self, identity: Identity | None, result: R, **request: Any
    ) -> Iterable[KeyTarget]:
        return ()

    def on_success_removes(
        self, identity: Identity | None, result: R, **request: Any
    ) -> Iterable[KeyTarget]:
        return ()

    def not_found_keys(self, identity: Identity | None, **request: Any) -> Iterable[KeyTarget]:
        """Keys describing the entity; invalidated when it turns out gone."""
        return self.affected_keys(identity, **request)

    def success_message(self, result: R, **request: Any) -> str | None:
        return None

    def error_message(self, error: BaseException, **request: Any) -> str:
        if isinstance(error, (AuthenticationRequired, AuthorizationDenied, Conflict)):
            return error.message
        return self.failure_message


class MutationRunner:
    """Executes Mutation strategies against one store and backend."""

    def __init__(
        self,
        store: CacheStore,
        backend: RemoteBackend,
        session: SessionProvider,
        *,
        on_touch: Callable[[list[CacheKey]], None] | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._session = session
        self._on_touch = on_touch

    async def execute(self, mutation: Mutation[R], /, **request: Any) -> R:
        """Run one mutation; errors propagate after rollback."""
        if mutation.requires_auth:
            try:
                identity: Identity | None = require_identity(self._session)
            except AuthenticationRequired:
                logger.info("%s rejected: no active session", mutation.name)
                raise
        else:
            identity = self._session.current_identity()

        mutation.authorize(self._store, identity, **request)

        context = MutationContext(name=mutation.name, started_at=self._store.now())
        keys = self._resolve(mutation.affected_keys(identity, **request))
        context.snapshots.extend(self._store.snapshot(key) for key in keys)
        before = {s.key: s.value for s in context.snapshots}
        if self._on_touch is not None and keys:
            self._on_touch(keys)

        for snapshot in context.snapshots:
            new = mutation.optimistic(snapshot.key, snapshot.value, before, identity, **request)
            if new is SKIP:
                continue
            self._store.set(snapshot.key, new)
            context.written.add(snapshot.key)

        try:
            result = await mutation.perform(self._backend, identity, **request)
        except BaseException as e:
            # cancellation rolls back too; the remote call may still land
            self._rollback(context)
            if isinstance(e, NotFound):
                self._invalidate(mutation.not_found_keys(identity, **request))
            self._invalidate(mutation.on_error_invalidates(identity, e, **request))
            logger.warning(
                "%s failed (%s), rolled back %d keys",
                mutation.name,
                type(e).__name__,
                len(context.written),
            )
            raise
        else:
            for snapshot in context.snapshots:
                current = self._store.get_value(snapshot.key)
                value = mutation.reconcile(snapshot.key, current, result, identity, **request)
                if value is not KEEP:
                    self._store.set(snapshot.key, value)
            for target in mutation.on_success_removes(identity, result, **request):
                self._store.remove(target)
            self._invalidate(mutation.on_success_invalidates(identity, result, **request))
            logger.info("%s succeeded", mutation.name)
            return result
        finally:
            self._invalidate(mutation.invalidates(identity, **request))

    def _resolve(self, targets: Iterable[KeyTarget]) -> list[CacheKey]:
        """Expand predicates against present keys; keep explicit keys as is."""
        seen: dict[CacheKey, None] = {}
        for target in targets:
            if callable(target):
                for key in self._store.keys(target):
                    seen.setdefault(key, None)
            else:
                seen.setdefault(target, None)
        return list(seen)

    def _rollback(self, context: MutationContext) -> None:
        for snapshot in reversed(context.written_snapshots()):
            self._store.restore(snapshot)
            logger.debug("%s restored %s", context.name, serialize_key(snapshot.key))

    def _invalidate(self, targets: Iterable[KeyTarget]) -> None:
        for target in targets:
            self._store.invalidate(target)


async def best_effort(awaitable: Awaitable[T], *, what: str) -> T | None:
    """Await a non-critical side call; log and drop its failure."""
    try:
        return await awaitable
    except OptiqError as e:
        logger.warning("%s failed: %s", what, e.message)
    except Exception:
        logger.warning("%s failed", what, exc_info=True)
    return None


__all__ = ["KEEP", "SKIP", "Mutation", "MutationRunner", "best_effort"]
