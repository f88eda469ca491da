"""Per-user watch progress through a lecture's items."""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import RemoteBackend, Row, eq, in_, select_one
from optiq.client import QueryClient
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import iso_now, user_id
from optiq.types import CacheKey, Identity

lecture_progress_keys = define_keys(
    {
        "all": lambda: ("lectureProgress",),
        "lists": lambda: ("lectureProgress", "list"),
        "list": lambda user: ("lectureProgress", "list", user),
        "details": lambda: ("lectureProgress", "detail"),
        "detail": lambda lecture_id, user: ("lectureProgress", "detail", lecture_id, user),
        "stats": lambda user: ("lectureProgress", "stats", user),
    }
)


@dataclass(frozen=True, slots=True)
class LectureProgress:
    lecture_id: int
    user_id: str
    completed_items: tuple[int, ...] = ()
    total_items: int = 0
    progress_percentage: int = 0
    last_watched_at: str = ""
    last_watched_item_id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.total_items > 0 and len(self.completed_items) == self.total_items

    def with_item(self, item_id: int, watched_at: str) -> LectureProgress:
        completed = self.completed_items
        if item_id not in completed:
            completed = (*completed, item_id)
        return dataclasses.replace(
            self,
            completed_items=completed,
            progress_percentage=percentage(len(completed), self.total_items),
            last_watched_at=watched_at,
            last_watched_item_id=item_id,
        )


@dataclass(frozen=True, slots=True)
class LectureProgressStats:
    lecture_count: int = 0
    completed_lectures: int = 0
    total_items: int = 0
    completed_items: int = 0
    overall_percentage: int = 0


def percentage(done: int, total: int) -> int:
    """Whole percent, halves rounded up."""
    if total <= 0:
        return 0
    return math.floor(done * 100 / total + 0.5)


def from_row(row: Row) -> LectureProgress:
    return LectureProgress(
        lecture_id=row["lecture_id"],
        user_id=row["user_id"],
        completed_items=tuple(row.get("completed_items") or ()),
        total_items=row.get("total_items") or 0,
        progress_percentage=row.get("progress_percentage") or 0,
        last_watched_at=row.get("last_watched_at") or "",
        last_watched_item_id=row.get("last_watched_item_id"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def calculate_stats(progress_map: dict[int, LectureProgress]) -> LectureProgressStats:
    lectures = list(progress_map.values())
    total = sum(p.total_items for p in lectures)
    completed = sum(len(p.completed_items) for p in lectures)
    return LectureProgressStats(
        lecture_count=len(lectures),
        completed_lectures=sum(1 for p in lectures if p.is_completed),
        total_items=total,
        completed_items=completed,
        overall_percentage=percentage(completed, total),
    )


def next_item_to_watch(progress: LectureProgress | None, item_ids: Sequence[int]) -> int | None:
    """The item after the last watched one, else the first not yet completed."""
    if progress is None:
        return item_ids[0] if item_ids else None
    last = progress.last_watched_item_id
    if last is not None and last in item_ids:
        index = list(item_ids).index(last)
        if index < len(item_ids) - 1:
            return item_ids[index + 1]
    return next((i for i in item_ids if i not in progress.completed_items), None)


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_progress(
    backend: RemoteBackend, user: str, lecture_id: int
) -> LectureProgress | None:
    row = await select_one(
        backend, "lecture_progress", filters=[eq("user_id", user), eq("lecture_id", lecture_id)]
    )
    return None if row is None else from_row(row)


async def fetch_all_progress(backend: RemoteBackend, user: str) -> dict[int, LectureProgress]:
    rows = await backend.select("lecture_progress", filters=[eq("user_id", user)])
    return {row["lecture_id"]: from_row(row) for row in rows}


async def count_items(backend: RemoteBackend, lecture_id: int) -> int:
    """Number of items across all sections of a lecture."""
    sections = await backend.select(
        "lecture_sections", filters=[eq("lecture_id", lecture_id)], columns="id"
    )
    if not sections:
        return 0
    return await backend.count(
        "lecture_items", filters=[in_("section_id", [s["id"] for s in sections])]
    )


async def save_progress(backend: RemoteBackend, progress: LectureProgress) -> LectureProgress:
    (row,) = await backend.upsert(
        "lecture_progress",
        {
            "user_id": progress.user_id,
            "lecture_id": progress.lecture_id,
            "completed_items": list(progress.completed_items),
            "total_items": progress.total_items,
            "progress_percentage": progress.progress_percentage,
            "last_watched_at": progress.last_watched_at,
            "last_watched_item_id": progress.last_watched_item_id,
            "updated_at": iso_now(),
        },
        on_conflict=("user_id", "lecture_id"),
    )
    return from_row(row)


async def _current_or_new(backend: RemoteBackend, user: str, lecture_id: int) -> LectureProgress:
    current = await fetch_progress(backend, user, lecture_id)
    if current is not None:
        return current
    return LectureProgress(
        lecture_id=lecture_id, user_id=user, total_items=await count_items(backend, lecture_id)
    )


async def mark_item_completed(
    backend: RemoteBackend, user: str, lecture_id: int, item_id: int
) -> LectureProgress:
    """Complete one item, creating the progress row when absent."""
    current = await _current_or_new(backend, user, lecture_id)
    if item_id in current.completed_items:
        return current
    return await save_progress(backend, current.with_item(item_id, iso_now()))


async def update_last_watched(
    backend: RemoteBackend, user: str, lecture_id: int, item_id: int
) -> LectureProgress:
    current = await _current_or_new(backend, user, lecture_id)
    return await save_progress(
        backend,
        dataclasses.replace(current, last_watched_at=iso_now(), last_watched_item_id=item_id),
    )


async def reset_progress(
    backend: RemoteBackend, user: str, lecture_id: int
) -> LectureProgress | None:
    current = await fetch_progress(backend, user, lecture_id)
    if current is None:
        return None
    return await save_progress(
        backend,
        dataclasses.replace(
            current,
            completed_items=(),
            progress_percentage=0,
            last_watched_at=iso_now(),
            last_watched_item_id=None,
        ),
    )


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def lecture_progress(client: QueryClient, lecture_id: int) -> LectureProgress | None:
    user = user_id(client.identity())
    if user is None:
        return None
    return await client.query(
        lecture_progress_keys["detail"](lecture_id, user),
        lambda: fetch_progress(client.backend, user, lecture_id),
        stale_time="30s",
    )


async def all_lecture_progress(client: QueryClient) -> dict[int, LectureProgress]:
    user = user_id(client.identity())
    if user is None:
        return {}
    return await client.query(
        lecture_progress_keys["list"](user),
        lambda: fetch_all_progress(client.backend, user),
        stale_time="30s",
    )


async def lecture_progress_stats(client: QueryClient) -> LectureProgressStats:
    user = user_id(client.identity())
    if user is None:
        return LectureProgressStats()

    async def compute() -> LectureProgressStats:
        return calculate_stats(await all_lecture_progress(client))

    return await client.query(lecture_progress_keys["stats"](user), compute, stale_time="1m")


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


def _progress_keys(identity: Identity | None, lecture_id: int) -> list[KeyTarget]:
    identity = signed_in(identity)
    return [
        lecture_progress_keys["detail"](lecture_id, identity.id),
        lecture_progress_keys["list"](identity.id),
    ]


class MarkLectureItemCompleted(Mutation[LectureProgress]):
    name = "mark_lecture_item_completed"
    failure_message = "진도 저장에 실패했습니다."

    def affected_keys(
        self, identity: Identity | None, *, lecture_id: int, item_id: int
    ) -> list[KeyTarget]:
        return _progress_keys(identity, lecture_id)

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        lecture_id: int,
        item_id: int,
    ) -> Any:
        identity = signed_in(identity)
        detail = before.get(lecture_progress_keys["detail"](lecture_id, identity.id))
        if detail is None or item_id in detail.completed_items:
            return SKIP
        updated = detail.with_item(item_id, iso_now())
        if key[1] == "detail":
            return updated
        if current is None:
            return SKIP
        return {**current, lecture_id: updated}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int, item_id: int
    ) -> LectureProgress:
        identity = signed_in(identity)
        return await mark_item_completed(backend, identity.id, lecture_id, item_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: LectureProgress,
        identity: Identity | None,
        *,
        lecture_id: int,
        item_id: int,
    ) -> Any:
        if key[1] == "detail":
            return result
        if current is None:
            return KEEP
        return {**current, lecture_id: result}

    def invalidates(
        self, identity: Identity | None, *, lecture_id: int, item_id: int
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [lecture_progress_keys["stats"](identity.id)]


class UpdateLastWatched(Mutation[LectureProgress]):
    """Record the item being watched; never written optimistically."""

    name = "update_last_watched"

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int, item_id: int
    ) -> LectureProgress:
        identity = signed_in(identity)
        return await update_last_watched(backend, identity.id, lecture_id, item_id)

    def invalidates(
        self, identity: Identity | None, *, lecture_id: int, item_id: int
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [lecture_progress_keys["detail"](lecture_id, identity.id)]


class ResetLectureProgress(Mutation[LectureProgress | None]):
    name = "reset_lecture_progress"
    failure_message = "진도 초기화에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, lecture_id: int) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [lecture_progress_keys["detail"](lecture_id, identity.id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        lecture_id: int,
    ) -> Any:
        if current is None:
            return SKIP
        return dataclasses.replace(
            current,
            completed_items=(),
            progress_percentage=0,
            last_watched_at=iso_now(),
            last_watched_item_id=None,
        )

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int
    ) -> LectureProgress | None:
        identity = signed_in(identity)
        return await reset_progress(backend, identity.id, lecture_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: LectureProgress | None,
        identity: Identity | None,
        *,
        lecture_id: int,
    ) -> Any:
        return KEEP if result is None else result

    def invalidates(self, identity: Identity | None, *, lecture_id: int) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            lecture_progress_keys["list"](identity.id),
            lecture_progress_keys["stats"](identity.id),
        ]


__all__ = [
    "LectureProgress",
    "LectureProgressStats",
    "MarkLectureItemCompleted",
    "ResetLectureProgress",
    "UpdateLastWatched",
    "all_lecture_progress",
    "calculate_stats",
    "count_items",
    "fetch_all_progress",
    "fetch_progress",
    "lecture_progress",
    "lecture_progress_keys",
    "lecture_progress_stats",
    "mark_item_completed",
    "next_item_to_watch",
    "percentage",
    "reset_progress",
    "update_last_watched",
]
