"""Admin inbox of contact inquiries: filter, mark read and answer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from optiq.backends.base import Filter, Order, RemoteBackend, Row, eq
from optiq.client import QueryClient
from optiq.errors import NotFound
from optiq.keys import KeyTarget, define_keys, under
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import iso_now, replace_in
from optiq.types import CacheKey, Identity

SEARCH_COLUMNS = ("name", "email", "subject", "message")

inquiry_keys = define_keys(
    {
        "all": lambda: ("admin", "inquiries"),
        "lists": lambda: ("admin", "inquiries", "list"),
        "list": lambda filters: ("admin", "inquiries", "list", filters),
        "stats": lambda: ("admin", "inquiries", "stats"),
        "dashboard": lambda: ("admin", "stats"),
    }
)


@dataclass(frozen=True, slots=True)
class InquiryFilters:
    status: str = "all"
    search: str = ""


@dataclass(frozen=True, slots=True)
class InquiryStats:
    unread: int = 0
    total: int = 0


def search_inquiries(rows: list[Row], query: str) -> list[Row]:
    """Case-insensitive substring match over name, email, subject and message."""
    needle = query.strip().lower()
    if not needle:
        return rows
    return [
        r for r in rows if any(needle in (r.get(c) or "").lower() for c in SEARCH_COLUMNS)
    ]


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_inquiries(
    backend: RemoteBackend, filters: InquiryFilters | None = None
) -> list[Row]:
    filters = filters or InquiryFilters()
    conditions: list[Filter] = []
    if filters.status != "all":
        conditions.append(eq("status", filters.status))
    rows = await backend.select(
        "contact_messages", filters=conditions, order=Order("created_at", ascending=False)
    )
    return search_inquiries(rows, filters.search)


async def _set_status(backend: RemoteBackend, inquiry_id: int, values: Row) -> Row:
    updated = await backend.update(
        "contact_messages", {**values, "updated_at": iso_now()}, filters=[eq("id", inquiry_id)]
    )
    if not updated:
        raise NotFound("문의를 찾을 수 없습니다.")
    return updated[0]


async def respond_to_inquiry(backend: RemoteBackend, inquiry_id: int, response: str) -> Row:
    return await _set_status(backend, inquiry_id, {"status": "answered", "response": response})


async def mark_as_read(backend: RemoteBackend, inquiry_id: int) -> Row:
    return await _set_status(backend, inquiry_id, {"status": "read"})


async def fetch_inquiry_stats(backend: RemoteBackend) -> InquiryStats:
    return InquiryStats(
        unread=await backend.count("contact_messages", filters=[eq("status", "unread")]),
        total=await backend.count("contact_messages"),
    )


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def inquiries(client: QueryClient, filters: InquiryFilters | None = None) -> list[Row]:
    filters = filters or InquiryFilters()
    return await client.query(
        inquiry_keys["list"](filters),
        lambda: fetch_inquiries(client.backend, filters),
        stale_time="30s",
    )


async def inquiry_stats(client: QueryClient) -> InquiryStats:
    return await client.query(
        inquiry_keys["stats"](),
        lambda: fetch_inquiry_stats(client.backend),
        stale_time="30s",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class _InquiryMutation(Mutation[Row]):
    """Rewrites the inquiry in every cached list, whatever its filters."""

    def affected_keys(self, identity: Identity | None, **_: Any) -> list[KeyTarget]:
        return [under(*inquiry_keys["lists"]())]

    def changes(self, **request: Any) -> Row:
        raise NotImplementedError

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        inquiry_id: int,
        **request: Any,
    ) -> Any:
        if current is None or not any(r.get("id") == inquiry_id for r in current):
            return SKIP
        return replace_in(current, inquiry_id, updated_at=iso_now(), **self.changes(**request))

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        if current is None or not any(r.get("id") == result["id"] for r in current):
            return KEEP
        return [result if r.get("id") == result["id"] else r for r in current]

    def on_success_invalidates(
        self, identity: Identity | None, result: Row, **_: Any
    ) -> list[KeyTarget]:
        return [inquiry_keys["all"](), inquiry_keys["dashboard"]()]


class RespondToInquiry(_InquiryMutation):
    name = "respond_to_inquiry"
    failure_message = "응답 전송에 실패했습니다."

    def changes(self, *, response: str, **_: Any) -> Row:
        return {"status": "answered", "response": response}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, inquiry_id: int, response: str
    ) -> Row:
        return await respond_to_inquiry(backend, inquiry_id, response)

    def success_message(self, result: Row, **_: Any) -> str:
        return "응답이 전송되었습니다."


class MarkInquiryRead(_InquiryMutation):
    name = "mark_inquiry_read"
    failure_message = "읽음 상태로 변경에 실패했습니다."

    def changes(self, **_: Any) -> Row:
        return {"status": "read"}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, inquiry_id: int
    ) -> Row:
        return await mark_as_read(backend, inquiry_id)

    def success_message(self, result: Row, **_: Any) -> str:
        return "읽음 상태로 변경되었습니다."


__all__ = [
    "InquiryFilters",
    "InquiryStats",
    "MarkInquiryRead",
    "RespondToInquiry",
    "fetch_inquiries",
    "fetch_inquiry_stats",
    "inquiries",
    "inquiry_keys",
    "inquiry_stats",
    "mark_as_read",
    "respond_to_inquiry",
    "search_inquiries",
]
