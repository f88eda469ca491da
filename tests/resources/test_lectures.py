"""Tests for the read-only lecture catalogue."""

import pytest

from optiq import MemoryBackend, NotFound, QueryClient
from optiq.resources import lectures
from optiq.resources.lectures import SearchFilters, lecture_keys


@pytest.fixture
def seeded(backend: MemoryBackend) -> MemoryBackend:
    backend.seed(
        "lectures",
        [
            {"id": 1, "title": "파이썬 입문", "instructor": "Kim", "category": "dev",
             "keyword": "python", "depth": "입문", "group_type": None, "created_at": "2024-01-01"},
            {"id": 2, "title": "데이터 분석", "instructor": "Lee", "category": "data",
             "keyword": "pandas,python", "depth": "중급", "group_type": "offline",
             "is_free": False, "price": 30000, "created_at": "2024-02-01"},
            {"id": 3, "title": "React", "instructor": "Park", "category": "dev",
             "keyword": "frontend", "depth": "고급", "group_type": "online",
             "created_at": "2024-03-01"},
        ],
    )
    backend.seed(
        "lecture_sections",
        [
            {"id": 20, "lecture_id": 1, "title": "둘째", "order_index": 2},
            {"id": 21, "lecture_id": 1, "title": "첫째", "order_index": 1},
        ],
    )
    return backend


class TestList:
    async def test_all_newest_first_with_defaults(
        self, client: QueryClient, seeded: MemoryBackend
    ) -> None:
        rows = await lectures.lecture_list(client)
        assert [r.id for r in rows] == [3, 2, 1]
        first = rows[2]
        assert first.group_type == "online"
        assert first.is_free is True
        assert first.price == 0
        assert first.thumbnail_url == ""
        assert first.href == "/knowledge/lecture/1"
        assert rows[1].is_free is False

    async def test_by_category(self, client: QueryClient, seeded: MemoryBackend) -> None:
        rows = await lectures.lecture_list(client, "dev")
        assert [r.id for r in rows] == [3, 1]
        assert lecture_keys["list"]("dev") in client.store


class TestSearch:
    """Title, instructor or keyword match, narrowed by filters."""

    async def test_matches_any_text_column(
        self, client: QueryClient, seeded: MemoryBackend
    ) -> None:
        rows = await lectures.lecture_search(client, "PYTHON")
        assert [r.id for r in rows] == [2, 1]
        rows = await lectures.lecture_search(client, "park")
        assert [r.id for r in rows] == [3]

    async def test_filters(self, client: QueryClient, seeded: MemoryBackend) -> None:
        rows = await lectures.lecture_search(client, "python", SearchFilters(depth=("입문",)))
        assert [r.id for r in rows] == [1]
        rows = await lectures.lecture_search(client, "python", SearchFilters(has_group=True))
        assert [r.id for r in rows] == [2]
        rows = await lectures.lecture_search(client, "n", SearchFilters(fields=("dev",)))
        assert [r.id for r in rows] == [3, 1]

    async def test_empty_query(self, client: QueryClient, seeded: MemoryBackend) -> None:
        assert await lectures.lecture_search(client, "") == []
        assert len(client.store) == 0


class TestDetail:
    async def test_detail_and_sections(self, client: QueryClient, seeded: MemoryBackend) -> None:
        detail = await lectures.lecture_detail(client, 2)
        assert detail["title"] == "데이터 분석"
        sections = await lectures.lecture_sections(client, 1)
        assert [s["title"] for s in sections] == ["첫째", "둘째"]

    async def test_missing(self, client: QueryClient, seeded: MemoryBackend) -> None:
        with pytest.raises(NotFound, match="강의를 찾을 수 없습니다"):
            await lectures.lecture_detail(client, 99)
