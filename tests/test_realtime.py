"""Tests for the realtime channel and bridge."""

import asyncio
from collections.abc import Iterator

import pytest

from optiq import CacheStore, ChangeEvent, ChangeFeed, MemoryBackend, RealtimeBridge, RowChange


def counter_route(change: RowChange, store: CacheStore) -> Iterator[ChangeEvent]:
    count = store.get_value(("count",), 0)
    if change.event == "INSERT":
        yield ChangeEvent(("count",), count + 1)
    elif change.event == "DELETE":
        yield ChangeEvent(("count",), invalidate=True)


class TestChangeFeed:
    def test_publish_and_take(self) -> None:
        feed = ChangeFeed()
        feed.publish(RowChange("t", "INSERT", new={"id": 1}))
        feed.publish(RowChange("t", "INSERT", new={"id": 2}))
        assert feed.pending() == 2
        assert [c.new for c in feed.take_nowait()] == [{"id": 1}, {"id": 2}]
        assert feed.pending() == 0

    def test_closed_feed_rejects(self) -> None:
        feed = ChangeFeed()
        feed.close()
        assert feed.closed
        with pytest.raises(RuntimeError, match="closed"):
            feed.publish(RowChange("t", "INSERT"))


class TestRealtimeBridge:
    """Routed events go through the store API."""

    def test_dispatch_sets_and_invalidates(self) -> None:
        store = CacheStore(default_stale_time="5m")
        bridge = RealtimeBridge(store, ChangeFeed())
        bridge.route("t", counter_route)

        assert bridge.dispatch(RowChange("t", "INSERT", new={"id": 1})) == 1
        assert store.get_value(("count",)) == 1
        assert not store.is_stale(("count",))

        bridge.dispatch(RowChange("t", "DELETE", old={"id": 1}))
        assert store.is_stale(("count",))
        assert store.get_value(("count",)) == 1

    def test_other_tables_ignored(self) -> None:
        store = CacheStore()
        bridge = RealtimeBridge(store, ChangeFeed())
        bridge.route("t", counter_route)
        assert bridge.dispatch(RowChange("other", "INSERT", new={})) == 0
        assert len(store) == 0

    def test_unroute(self) -> None:
        store = CacheStore()
        bridge = RealtimeBridge(store, ChangeFeed())
        unroute = bridge.route("t", counter_route)
        unroute()
        assert bridge.dispatch(RowChange("t", "INSERT", new={})) == 0

    async def test_memory_backend_publishes_changes(self) -> None:
        feed = ChangeFeed()
        backend = MemoryBackend(feed=feed)
        store = CacheStore()
        bridge = RealtimeBridge(store, feed)
        bridge.route("t", counter_route)

        await backend.insert("t", {"name": "a"})
        await backend.insert("t", {"name": "b"})
        assert bridge.drain() == 2
        assert store.get_value(("count",)) == 2

    async def test_run_until_closed(self) -> None:
        feed = ChangeFeed()
        store = CacheStore()
        bridge = RealtimeBridge(store, feed)
        bridge.route("t", counter_route)
        task = asyncio.create_task(bridge.run())

        feed.publish(RowChange("t", "INSERT", new={"id": 1}))
        feed.close()
        await asyncio.wait_for(task, timeout=1)
        assert store.get_value(("count",)) == 1

    async def test_run_survives_failing_handler(self) -> None:
        feed = ChangeFeed()
        store = CacheStore()
        bridge = RealtimeBridge(store, feed)

        def broken(change: RowChange, store: CacheStore) -> Iterator[ChangeEvent]:
            raise ValueError("bad row")

        bridge.route("bad", broken)
        bridge.route("t", counter_route)
        task = asyncio.create_task(bridge.run())
        feed.publish(RowChange("bad", "INSERT", new={}))
        feed.publish(RowChange("t", "INSERT", new={}))
        feed.close()
        await asyncio.wait_for(task, timeout=1)
        assert store.get_value(("count",)) == 1
