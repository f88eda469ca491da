"""Tests for lecture watch progress."""

from collections.abc import Callable

import pytest

from optiq import MemoryBackend, QueryClient
from optiq.resources import lecture_progress
from optiq.resources.lecture_progress import (
    LectureProgress,
    MarkLectureItemCompleted,
    ResetLectureProgress,
    lecture_progress_keys,
    next_item_to_watch,
    percentage,
)


@pytest.fixture
def seeded(backend: MemoryBackend) -> MemoryBackend:
    backend.seed("lecture_sections", [{"id": 1, "lecture_id": 5}, {"id": 2, "lecture_id": 5}])
    backend.seed(
        "lecture_items",
        [{"id": 51, "section_id": 1}, {"id": 52, "section_id": 1}, {"id": 53, "section_id": 2}],
    )
    return backend


class TestHelpers:
    def test_percentage_rounds_halves_up(self) -> None:
        assert percentage(1, 3) == 33
        assert percentage(1, 8) == 13
        assert percentage(0, 0) == 0

    def test_next_item(self) -> None:
        progress = LectureProgress(
            lecture_id=5, user_id="u1", completed_items=(51,), last_watched_item_id=51
        )
        assert next_item_to_watch(progress, [51, 52, 53]) == 52
        assert next_item_to_watch(None, [51, 52]) == 51
        done = LectureProgress(lecture_id=5, user_id="u1", completed_items=(51, 53), last_watched_item_id=53)
        assert next_item_to_watch(done, [51, 52, 53]) == 52

    def test_stats(self) -> None:
        stats = lecture_progress.calculate_stats(
            {
                1: LectureProgress(lecture_id=1, user_id="u1", completed_items=(1, 2), total_items=2),
                2: LectureProgress(lecture_id=2, user_id="u1", completed_items=(), total_items=2),
            }
        )
        assert stats.completed_lectures == 1
        assert stats.overall_percentage == 50


class TestMarkLectureItemCompleted:
    async def test_creates_progress_row(self, client: QueryClient, seeded: MemoryBackend) -> None:
        progress = await client.execute(MarkLectureItemCompleted(), lecture_id=5, item_id=51)
        assert progress.total_items == 3
        assert progress.completed_items == (51,)
        assert progress.progress_percentage == 33
        cached = client.get_query_data(lecture_progress_keys["detail"](5, "u1"))
        assert cached == progress

    async def test_optimistic_then_rollback(
        self, client: QueryClient, seeded: MemoryBackend, fail: Callable[..., None]
    ) -> None:
        await client.execute(MarkLectureItemCompleted(), lecture_id=5, item_id=51)
        await lecture_progress.all_lecture_progress(client)
        key = lecture_progress_keys["detail"](5, "u1")
        seen: list[tuple[int, ...]] = []
        client.store.subscribe(
            lambda k, entry: seen.append(entry.value.completed_items) if k == key and entry else None
        )
        fail("upsert")

        result = await client.mutate(MarkLectureItemCompleted(), lecture_id=5, item_id=52)

        assert result.message == "진도 저장에 실패했습니다."
        assert seen == [(51, 52), (51,)]
        listed = client.get_query_data(lecture_progress_keys["list"]("u1"))
        assert listed[5].completed_items == (51,)

    async def test_stats_invalidated(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await lecture_progress.lecture_progress_stats(client)
        await client.execute(MarkLectureItemCompleted(), lecture_id=5, item_id=53)
        assert client.store.is_stale(lecture_progress_keys["stats"]("u1"))


class TestResetAndLastWatched:
    async def test_reset(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await client.execute(MarkLectureItemCompleted(), lecture_id=5, item_id=51)
        result = await client.execute(ResetLectureProgress(), lecture_id=5)
        assert result is not None
        assert result.completed_items == ()
        assert client.get_query_data(lecture_progress_keys["detail"](5, "u1")).completed_items == ()

    async def test_reset_without_progress(self, client: QueryClient, seeded: MemoryBackend) -> None:
        assert await client.execute(ResetLectureProgress(), lecture_id=5) is None

    async def test_last_watched(self, client: QueryClient, seeded: MemoryBackend) -> None:
        progress = await client.execute(lecture_progress.UpdateLastWatched(), lecture_id=5, item_id=53)
        assert progress.last_watched_item_id == 53
        assert progress.completed_items == ()
