"""Per-user completion of course items."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import RemoteBackend, Row, eq
from optiq.client import QueryClient
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import SKIP, Mutation
from optiq.resources.common import iso_now, user_id
from optiq.types import CacheKey, Identity

course_progress_keys = define_keys(
    {
        "all": lambda: ("course-progress",),
        "lists": lambda: ("course-progress", "list"),
        "list": lambda user: ("course-progress", "list", user),
        "details": lambda: ("course-progress", "detail"),
        "detail": lambda course_id, user: ("course-progress", "detail", course_id, user),
    }
)


@dataclass(frozen=True, slots=True)
class CourseProgress:
    completed_items: tuple[str, ...] = ()
    is_completed: bool = False
    has_writing: bool = False

    def with_item(self, item_id: str) -> CourseProgress:
        if item_id in self.completed_items:
            return self
        return dataclasses.replace(
            self, completed_items=(*self.completed_items, item_id), is_completed=True
        )


def _progress(rows: list[Row], has_writing: bool) -> CourseProgress:
    completed = tuple(r["item_id"] for r in rows if r.get("completed"))
    return CourseProgress(
        completed_items=completed, is_completed=bool(completed), has_writing=has_writing
    )


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_progress(backend: RemoteBackend, user: str | None, course_id: str) -> CourseProgress:
    if user is None:
        return CourseProgress()
    rows = await backend.select(
        "course_progress",
        filters=[eq("course_id", course_id), eq("user_id", user)],
        columns="item_id,completed",
    )
    writings = await backend.select(
        "course_writings",
        filters=[eq("course_id", course_id), eq("user_id", user)],
        columns="id",
        limit=1,
    )
    return _progress(rows, bool(writings))


async def fetch_all_progress(backend: RemoteBackend, user: str | None) -> dict[str, CourseProgress]:
    """Progress for every course, keyed by course id (dashboard view)."""
    if user is None:
        return {}
    courses = await backend.select("courses", columns="id")
    rows = await backend.select(
        "course_progress", filters=[eq("user_id", user)], columns="course_id,item_id,completed"
    )
    writings = await backend.select(
        "course_writings", filters=[eq("user_id", user)], columns="course_id"
    )
    with_writing = {w["course_id"] for w in writings}
    return {
        c["id"]: _progress(
            [r for r in rows if r["course_id"] == c["id"]], c["id"] in with_writing
        )
        for c in courses
    }


async def mark_item_completed(
    backend: RemoteBackend, user: str, course_id: str, item_id: str
) -> Row:
    """Upsert one completed item; marking twice is harmless."""
    (row,) = await backend.upsert(
        "course_progress",
        {
            "course_id": course_id,
            "item_id": item_id,
            "user_id": user,
            "completed": True,
            "completed_at": iso_now(),
        },
        on_conflict=("course_id", "item_id", "user_id"),
    )
    return row


async def mark_course_completed(backend: RemoteBackend, user: str, course_id: str) -> list[str]:
    items = await backend.select("course_items", filters=[eq("course_id", course_id)], columns="id")
    item_ids = [i["id"] for i in items]
    if item_ids:
        now = iso_now()
        await backend.upsert(
            "course_progress",
            [
                {
                    "course_id": course_id,
                    "item_id": item_id,
                    "user_id": user,
                    "completed": True,
                    "completed_at": now,
                }
                for item_id in item_ids
            ],
            on_conflict=("course_id", "item_id", "user_id"),
        )
    return item_ids


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def course_progress(client: QueryClient, course_id: str) -> CourseProgress:
    user = user_id(client.identity())
    return await client.query(
        course_progress_keys["detail"](course_id, user or ""),
        lambda: fetch_progress(client.backend, user, course_id),
        stale_time="30s",
    )


async def all_courses_progress(client: QueryClient) -> dict[str, CourseProgress]:
    user = user_id(client.identity())
    return await client.query(
        course_progress_keys["list"](user or ""),
        lambda: fetch_all_progress(client.backend, user),
        stale_time="1m",
    )


async def is_item_completed(client: QueryClient, course_id: str, item_id: str) -> bool:
    return item_id in (await course_progress(client, course_id)).completed_items


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class MarkCourseItemCompleted(Mutation[Row]):
    """Add one item to the course's completed items.

    A missing detail entry is created from an empty CourseProgress so the
    item shows as done immediately; rollback removes it again.
    """

    name = "mark_course_item_completed"
    failure_message = "아이템 완료 처리에 실패했습니다."

    def affected_keys(
        self, identity: Identity | None, *, course_id: str, item_id: str
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            course_progress_keys["detail"](course_id, identity.id),
            course_progress_keys["list"](identity.id),
        ]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        course_id: str,
        item_id: str,
    ) -> Any:
        if key[1] == "detail":
            progress = current if current is not None else CourseProgress()
            return progress.with_item(item_id)
        if current is None:
            return SKIP
        progress = current.get(course_id, CourseProgress())
        return {**current, course_id: progress.with_item(item_id)}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, course_id: str, item_id: str
    ) -> Row:
        identity = signed_in(identity)
        return await mark_item_completed(backend, identity.id, course_id, item_id)

    def invalidates(
        self, identity: Identity | None, *, course_id: str, item_id: str
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            course_progress_keys["detail"](course_id, identity.id),
            course_progress_keys["list"](identity.id),
        ]

    def success_message(self, result: Row, **_: Any) -> str:
        return "학습이 완료되었습니다."


class MarkCourseCompleted(Mutation[list[str]]):
    name = "mark_course_completed"
    failure_message = "코스 완료 처리에 실패했습니다."

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, course_id: str
    ) -> list[str]:
        identity = signed_in(identity)
        return await mark_course_completed(backend, identity.id, course_id)

    def on_success_invalidates(
        self, identity: Identity | None, result: list[str], *, course_id: str
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            course_progress_keys["detail"](course_id, identity.id),
            course_progress_keys["list"](identity.id),
        ]

    def success_message(self, result: list[str], **_: Any) -> str:
        return "코스 학습이 완료되었습니다!"


__all__ = [
    "CourseProgress",
    "MarkCourseCompleted",
    "MarkCourseItemCompleted",
    "all_courses_progress",
    "course_progress",
    "course_progress_keys",
    "fetch_all_progress",
    "fetch_progress",
    "is_item_completed",
    "mark_course_completed",
    "mark_item_completed",
]
