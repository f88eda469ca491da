"""Tests for the admin inquiry inbox."""

from collections.abc import Callable

import pytest

from optiq import MemoryBackend, NotFound, QueryClient
from optiq.resources import inquiries
from optiq.resources.inquiries import InquiryFilters, InquiryStats, inquiry_keys

UNREAD = InquiryFilters(status="unread")


@pytest.fixture
def seeded(backend: MemoryBackend) -> MemoryBackend:
    backend.seed(
        "contact_messages",
        [
            {"id": 1, "name": "Kim", "email": "kim@example.com", "subject": "환불 문의",
             "message": "환불 가능한가요?", "status": "unread", "created_at": "2024-03-01T00:00:00+00:00"},
            {"id": 2, "name": "Lee", "email": "lee@example.com", "subject": "Login",
             "message": "Cannot sign in", "status": "read", "created_at": "2024-03-02T00:00:00+00:00"},
            {"id": 3, "name": "Park", "email": "park@example.com", "subject": "강의 요청",
             "message": "Django 강의", "status": "unread", "created_at": "2024-03-03T00:00:00+00:00"},
        ],
    )
    return backend


class TestFetchInquiries:
    async def test_newest_first(self, client: QueryClient, seeded: MemoryBackend) -> None:
        assert [r["id"] for r in await inquiries.inquiries(client)] == [3, 2, 1]

    async def test_status_filter(self, client: QueryClient, seeded: MemoryBackend) -> None:
        assert [r["id"] for r in await inquiries.inquiries(client, UNREAD)] == [3, 1]

    @pytest.mark.parametrize(
        ("search", "expected"),
        [("LOGIN", [2]), ("park@", [3]), ("환불", [1]), ("  ", [3, 2, 1]), ("nothing", [])],
    )
    async def test_search(
        self, client: QueryClient, seeded: MemoryBackend, search: str, expected: list[int]
    ) -> None:
        rows = await inquiries.inquiries(client, InquiryFilters(search=search))
        assert [r["id"] for r in rows] == expected

    async def test_stats(self, client: QueryClient, seeded: MemoryBackend) -> None:
        assert await inquiries.inquiry_stats(client) == InquiryStats(unread=2, total=3)


class TestRespond:
    async def test_updates_every_cached_list(
        self, client: QueryClient, seeded: MemoryBackend
    ) -> None:
        await inquiries.inquiries(client)
        await inquiries.inquiries(client, UNREAD)
        client.set_query_data(inquiry_keys["dashboard"](), {"unread": 2})

        result = await client.mutate(inquiries.RespondToInquiry(), inquiry_id=1, response="가능합니다")

        assert result.message == "응답이 전송되었습니다."
        for filters in (InquiryFilters(), UNREAD):
            row = next(r for r in client.get_query_data(inquiry_keys["list"](filters)) if r["id"] == 1)
            assert row["status"] == "answered"
            assert row["response"] == "가능합니다"
        assert client.store.is_stale(inquiry_keys["dashboard"]())
        stored = next(r for r in seeded.rows("contact_messages") if r["id"] == 1)
        assert stored["status"] == "answered"
        assert stored["updated_at"]

    async def test_missing(self, seeded: MemoryBackend) -> None:
        with pytest.raises(NotFound, match="문의를 찾을 수 없습니다"):
            await inquiries.respond_to_inquiry(seeded, 99, "x")


class TestMarkRead:
    async def test_mark_read(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await inquiries.inquiries(client, UNREAD)
        result = await client.mutate(inquiries.MarkInquiryRead(), inquiry_id=3)
        assert result.message == "읽음 상태로 변경되었습니다."
        row = client.get_query_data(inquiry_keys["list"](UNREAD))[0]
        assert row["status"] == "read"

    async def test_failure_rolls_back(
        self, client: QueryClient, seeded: MemoryBackend, fail: Callable[..., None]
    ) -> None:
        await inquiries.inquiries(client)
        fail("update")
        result = await client.mutate(inquiries.MarkInquiryRead(), inquiry_id=3)
        assert result.message == "읽음 상태로 변경에 실패했습니다."
        row = client.get_query_data(inquiry_keys["list"](InquiryFilters()))[0]
        assert row["status"] == "unread"
        assert "updated_at" not in row
