"""Tests for the optimistic mutation runner."""

import asyncio
import logging
from typing import Any

import pytest

from optiq import (
    KEEP,
    SKIP,
    AuthenticationRequired,
    AuthorizationDenied,
    CacheStore,
    Conflict,
    Identity,
    MemoryBackend,
    Mutation,
    NotFound,
    StaticSession,
    TransportFailure,
    require_identity,
    signed_in,
    under,
)
from optiq.mutation import MutationRunner, best_effort


class Counter(Mutation[int]):
    """Adds ``by`` to every counter key; the backend answers or raises."""

    name = "counter"

    def __init__(self, *, result: int | None = None, error: BaseException | None = None) -> None:
        self.result = result
        self.error = error
        self.seen_during_perform: dict[Any, Any] = {}
        self.store: CacheStore | None = None

    def affected_keys(self, identity: Any, **request: Any) -> list:
        return [("counter", 1), under("counter", "batch")]

    def optimistic(self, key, current, before, identity, *, by: int = 1) -> Any:
        if current is None:
            return SKIP
        return current + by

    async def perform(self, backend, identity, *, by: int = 1) -> int:
        if self.store is not None:
            self.seen_during_perform = {k: self.store.get_value(k) for k in self.store.keys()}
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result

    def reconcile(self, key, current, result, identity, **request: Any) -> Any:
        return result if key == ("counter", 1) else KEEP

    def invalidates(self, identity, **request: Any) -> list:
        return [("totals",)]


@pytest.fixture
def store() -> CacheStore:
    return CacheStore(default_stale_time="5m")


@pytest.fixture
def runner(store: CacheStore, session: StaticSession) -> MutationRunner:
    return MutationRunner(store, MemoryBackend(), session)


class TestOptimisticPhase:
    """Snapshot then local write before the remote call."""

    async def test_value_visible_during_perform(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        mutation = Counter(result=11)
        mutation.store = store
        await runner.execute(mutation, by=1)
        assert mutation.seen_during_perform[("counter", 1)] == 11

    async def test_predicate_expands_to_present_keys(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", "batch", "a"), 1)
        store.set(("counter", "batch", "b"), 2)
        store.set(("other",), 3)
        mutation = Counter(result=0)
        mutation.store = store
        await runner.execute(mutation, by=5)
        assert mutation.seen_during_perform[("counter", "batch", "a")] == 6
        assert mutation.seen_during_perform[("counter", "batch", "b")] == 7
        assert mutation.seen_during_perform[("other",)] == 3

    async def test_skip_leaves_absent_key_absent(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        mutation = Counter(error=TransportFailure())
        with pytest.raises(TransportFailure):
            await runner.execute(mutation)
        assert ("counter", 1) not in store


class TestSuccess:
    async def test_authoritative_value_replaces_optimistic(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        assert await runner.execute(Counter(result=42), by=1) == 42
        assert store.get_value(("counter", 1)) == 42

    async def test_keep_retains_optimistic_value(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", "batch", "a"), 1)
        await runner.execute(Counter(result=0), by=2)
        assert store.get_value(("counter", "batch", "a")) == 3

    async def test_invalidates_on_settle(self, store: CacheStore, runner: MutationRunner) -> None:
        store.set(("totals", "all"), 100)
        await runner.execute(Counter(result=0))
        assert store.is_stale(("totals", "all"))
        assert store.get_value(("totals", "all")) == 100


class TestRollback:
    """Failures restore exactly what was there before."""

    async def test_restores_every_written_key(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        store.set(("counter", "batch", "a"), 1)
        with pytest.raises(TransportFailure):
            await runner.execute(Counter(error=TransportFailure()), by=3)
        assert store.get_value(("counter", 1)) == 10
        assert store.get_value(("counter", "batch", "a")) == 1

    async def test_invalidates_even_on_failure(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("totals",), 1)
        with pytest.raises(Conflict):
            await runner.execute(Counter(error=Conflict()))
        assert store.is_stale(("totals",))

    async def test_not_found_invalidates_entity_keys(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        with pytest.raises(NotFound):
            await runner.execute(Counter(error=NotFound()))
        assert store.get_value(("counter", 1)) == 10
        assert store.is_stale(("counter", 1))

    async def test_failure_is_logged(
        self, store: CacheStore, runner: MutationRunner, caplog: pytest.LogCaptureFixture
    ) -> None:
        store.set(("counter", 1), 10)
        with caplog.at_level(logging.WARNING, logger="optiq.mutation"):
            with pytest.raises(TransportFailure):
                await runner.execute(Counter(error=TransportFailure()))
        assert "counter failed (TransportFailure), rolled back 1 keys" in caplog.text


class TestPreconditions:
    async def test_signed_out_writes_nothing(self, store: CacheStore) -> None:
        runner = MutationRunner(store, MemoryBackend(), StaticSession())
        store.set(("counter", 1), 10)
        with pytest.raises(AuthenticationRequired):
            await runner.execute(Counter(result=1))
        assert store.get_value(("counter", 1)) == 10

    async def test_authorize_runs_before_writes(self, store: CacheStore) -> None:
        class Denied(Counter):
            def authorize(self, store, identity, **request: Any) -> None:
                raise AuthorizationDenied("no")

        runner = MutationRunner(store, MemoryBackend(), StaticSession(Identity("u1")))
        store.set(("counter", 1), 10)
        with pytest.raises(AuthorizationDenied):
            await runner.execute(Denied(result=1))
        assert store.get_value(("counter", 1)) == 10


class TestMessages:
    def test_error_message_taxonomy(self) -> None:
        mutation = Counter()
        mutation.failure_message = "카운터 처리에 실패했습니다."
        assert mutation.error_message(Conflict("이미 있음")) == "이미 있음"
        assert mutation.error_message(AuthenticationRequired()) == "로그인이 필요합니다."
        assert mutation.error_message(TransportFailure()) == "카운터 처리에 실패했습니다."
        assert mutation.error_message(RuntimeError("boom")) == "카운터 처리에 실패했습니다."


class TestBestEffort:
    async def test_returns_value(self) -> None:
        async def ok() -> int:
            return 1

        assert await best_effort(ok(), what="side call") == 1

    async def test_logs_and_drops_failure(self, caplog: pytest.LogCaptureFixture) -> None:
        async def broken() -> int:
            raise TransportFailure("down")

        with caplog.at_level(logging.WARNING, logger="optiq.mutation"):
            assert await best_effort(broken(), what="side call") is None
        assert "side call failed: down" in caplog.text


class Gated(Counter):
    """Counter whose remote call waits until the test releases it."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def perform(self, backend, identity, *, by: int = 1) -> int:
        self.started.set()
        await self.release.wait()
        return await super().perform(backend, identity, by=by)


class TestOverlapping:
    """Two invocations on one key each restore the snapshot they captured."""

    async def test_second_rolls_back_to_first_optimistic_value(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        first = Gated(result=11)
        second = Gated(error=TransportFailure())
        first_task = asyncio.create_task(runner.execute(first, by=1))
        await first.started.wait()
        second_task = asyncio.create_task(runner.execute(second, by=1))
        await second.started.wait()
        assert store.get_value(("counter", 1)) == 12

        second.release.set()
        with pytest.raises(TransportFailure):
            await second_task
        assert store.get_value(("counter", 1)) == 11

        first.release.set()
        assert await first_task == 11
        assert store.get_value(("counter", 1)) == 11

    async def test_later_success_overwrites_earlier_rollback(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        first = Gated(error=TransportFailure())
        second = Gated(result=42)
        first_task = asyncio.create_task(runner.execute(first, by=1))
        await first.started.wait()
        second_task = asyncio.create_task(runner.execute(second, by=1))
        await second.started.wait()

        first.release.set()
        with pytest.raises(TransportFailure):
            await first_task
        assert store.get_value(("counter", 1)) == 10

        second.release.set()
        await second_task
        assert store.get_value(("counter", 1)) == 42


class TestCancellation:
    async def test_cancelled_perform_rolls_back(
        self, store: CacheStore, runner: MutationRunner
    ) -> None:
        store.set(("counter", 1), 10)
        mutation = Gated(result=11)
        task = asyncio.create_task(runner.execute(mutation, by=1))
        await mutation.started.wait()
        assert store.get_value(("counter", 1)) == 11

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.get_value(("counter", 1)) == 10


class TestRequireIdentity:
    def test_signed_out_session_raises(self) -> None:
        with pytest.raises(AuthenticationRequired):
            require_identity(StaticSession())

    def test_returns_current_identity(self, session: StaticSession) -> None:
        assert require_identity(session).id == "u1"

    def test_signed_in_narrows(self) -> None:
        identity = Identity("u2")
        assert signed_in(identity) is identity
        with pytest.raises(AuthenticationRequired):
            signed_in(None)
