"""Lecture enrollment: enroll, cancel, complete and per-user status."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, select_one
from optiq.client import QueryClient
from optiq.errors import Conflict, NotFound
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import iso_now, user_id
from optiq.resources.lectures import lecture_keys
from optiq.types import CacheKey, Identity

ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"

enrollment_keys = define_keys(
    {
        "all": lambda: ("enrollments",),
        "lists": lambda: ("enrollments", "list"),
        "list": lambda user: ("enrollments", "list", user),
        "details": lambda: ("enrollments", "detail"),
        "detail": lambda lecture_id, user: ("enrollments", "detail", lecture_id, user),
        "stats": lambda user: ("enrollments", "stats", user),
    }
)


@dataclass(frozen=True, slots=True)
class EnrollmentInfo:
    is_enrolled: bool = False
    status: str | None = None
    last_watched_item: int | None = None


@dataclass(frozen=True, slots=True)
class EnrollmentStats:
    total: int = 0
    active: int = 0
    completed: int = 0
    cancelled: int = 0


def count_statuses(rows: list[Row]) -> EnrollmentStats:
    statuses = [r.get("status") for r in rows]
    return EnrollmentStats(
        total=len(statuses),
        active=statuses.count(ACTIVE),
        completed=statuses.count(COMPLETED),
        cancelled=statuses.count(CANCELLED),
    )


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_enrollments(backend: RemoteBackend, user: str) -> list[Row]:
    return await backend.select(
        "enrollments",
        filters=[eq("user_id", user)],
        columns="lecture_id,status,enrolled_at,completed_at",
        order=Order("enrolled_at", ascending=False),
    )


async def fetch_enrollment_info(
    backend: RemoteBackend, lecture_id: int, user: str | None
) -> EnrollmentInfo:
    """Enrollment status plus the last watched item, for one lecture."""
    if user is None:
        return EnrollmentInfo()
    filters = [eq("lecture_id", lecture_id), eq("user_id", user)]
    enrollment = await select_one(backend, "enrollments", filters=filters, columns="status")
    progress = await select_one(
        backend, "lecture_progress", filters=filters, columns="last_watched_item_id"
    )
    return EnrollmentInfo(
        is_enrolled=enrollment is not None,
        status=None if enrollment is None else enrollment.get("status"),
        last_watched_item=None if progress is None else progress.get("last_watched_item_id"),
    )


async def fetch_enrollment_stats(backend: RemoteBackend, user: str) -> EnrollmentStats:
    rows = await backend.select("enrollments", filters=[eq("user_id", user)], columns="status")
    return count_statuses(rows)


async def sync_student_count(backend: RemoteBackend, lecture_id: int) -> int:
    """Store the number of active enrollments on the lecture row."""
    students = await backend.count(
        "enrollments", filters=[eq("lecture_id", lecture_id), eq("status", ACTIVE)]
    )
    await backend.update("lectures", {"students": students}, filters=[eq("id", lecture_id)])
    return students


async def enroll(backend: RemoteBackend, user: str, lecture_id: int) -> Row:
    """Enroll in a lecture; a cancelled or completed enrollment is reactivated."""
    existing = await select_one(
        backend,
        "enrollments",
        filters=[eq("lecture_id", lecture_id), eq("user_id", user)],
        columns="id,status",
    )
    values = {"status": ACTIVE, "enrolled_at": iso_now()}
    if existing is None:
        (row,) = await backend.insert(
            "enrollments", {"lecture_id": lecture_id, "user_id": user, **values}
        )
    elif existing.get("status") == ACTIVE:
        raise Conflict("이미 수강 중인 강의입니다.")
    else:
        (row,) = await backend.update("enrollments", values, filters=[eq("id", existing["id"])])
    await sync_student_count(backend, lecture_id)
    return row


async def cancel_enrollment(backend: RemoteBackend, user: str, lecture_id: int) -> None:
    deleted = await backend.delete(
        "enrollments", filters=[eq("lecture_id", lecture_id), eq("user_id", user)]
    )
    if not deleted:
        raise NotFound("수강 정보를 찾을 수 없습니다.")
    await sync_student_count(backend, lecture_id)


async def complete_lecture(backend: RemoteBackend, user: str, lecture_id: int) -> Row:
    updated = await backend.update(
        "enrollments",
        {"status": COMPLETED, "completed_at": iso_now()},
        filters=[eq("lecture_id", lecture_id), eq("user_id", user)],
    )
    if not updated:
        raise NotFound("수강 정보를 찾을 수 없습니다.")
    return updated[0]


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def enrollment_list(client: QueryClient) -> list[Row]:
    user = signed_in(client.identity()).id
    return await client.query(
        enrollment_keys["list"](user),
        lambda: fetch_enrollments(client.backend, user),
        stale_time="5m",
    )


async def enrollment_status(client: QueryClient, lecture_id: int) -> EnrollmentInfo:
    user = user_id(client.identity())
    if user is None:
        return EnrollmentInfo()
    return await client.query(
        enrollment_keys["detail"](lecture_id, user),
        lambda: fetch_enrollment_info(client.backend, lecture_id, user),
        stale_time="2m",
    )


async def enrollment_stats(client: QueryClient) -> EnrollmentStats:
    user = user_id(client.identity())
    if user is None:
        return EnrollmentStats()
    return await client.query(
        enrollment_keys["stats"](user),
        lambda: fetch_enrollment_stats(client.backend, user),
        stale_time="5m",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class _EnrollmentMutation(Mutation[Any]):
    """Writes the lecture's status optimistically; settles every enrollment view."""

    def affected_keys(
        self, identity: Identity | None, *, lecture_id: int, **_: Any
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [enrollment_keys["detail"](lecture_id, identity.id)]

    def on_success_invalidates(
        self, identity: Identity | None, result: Any, **_: Any
    ) -> list[KeyTarget]:
        return [enrollment_keys["all"](), lecture_keys["all"]()]


class EnrollLecture(_EnrollmentMutation):
    name = "enroll_lecture"
    failure_message = "수강 신청에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        lecture_id: int,
    ) -> Any:
        if current is None or current.status == ACTIVE:
            return SKIP
        return dataclasses.replace(current, is_enrolled=True, status=ACTIVE)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int
    ) -> Row:
        identity = signed_in(identity)
        return await enroll(backend, identity.id, lecture_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: Row,
        identity: Identity | None,
        *,
        lecture_id: int,
    ) -> Any:
        if current is None:
            return KEEP
        return dataclasses.replace(current, is_enrolled=True, status=result.get("status", ACTIVE))

    def success_message(self, result: Row, **_: Any) -> str:
        return "수강 신청이 완료되었습니다."


class CancelEnrollment(_EnrollmentMutation):
    name = "cancel_enrollment"
    failure_message = "수강 취소에 실패했습니다."

    def affected_keys(
        self, identity: Identity | None, *, lecture_id: int, **_: Any
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            enrollment_keys["detail"](lecture_id, identity.id),
            enrollment_keys["list"](identity.id),
        ]

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
        if key[1] == "detail":
            return dataclasses.replace(current, is_enrolled=False, status=None)
        return [r for r in current if r.get("lecture_id") != lecture_id]

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int
    ) -> None:
        identity = signed_in(identity)
        await cancel_enrollment(backend, identity.id, lecture_id)

    def success_message(self, result: None, **_: Any) -> str:
        return "수강이 취소되었습니다."


class CompleteLecture(_EnrollmentMutation):
    name = "complete_lecture"
    failure_message = "수강 완료 처리에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        lecture_id: int,
    ) -> Any:
        if current is None or not current.is_enrolled:
            return SKIP
        return dataclasses.replace(current, status=COMPLETED)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, lecture_id: int
    ) -> Row:
        identity = signed_in(identity)
        return await complete_lecture(backend, identity.id, lecture_id)

    def on_success_invalidates(
        self, identity: Identity | None, result: Any, **_: Any
    ) -> list[KeyTarget]:
        return [enrollment_keys["all"]()]

    def success_message(self, result: Row, **_: Any) -> str:
        return "수강을 완료했습니다."


__all__ = [
    "CancelEnrollment",
    "CompleteLecture",
    "EnrollLecture",
    "EnrollmentInfo",
    "EnrollmentStats",
    "cancel_enrollment",
    "complete_lecture",
    "count_statuses",
    "enroll",
    "enrollment_keys",
    "enrollment_list",
    "enrollment_stats",
    "enrollment_status",
    "fetch_enrollment_info",
    "fetch_enrollment_stats",
    "fetch_enrollments",
    "sync_student_count",
]
