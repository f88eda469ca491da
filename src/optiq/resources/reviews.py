"""Lecture reviews and their replies: list, write, edit, delete and like."""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, in_, select_one
from optiq.client import QueryClient
from optiq.errors import AuthorizationDenied, Conflict, NotFound
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import (
    LikeStatus,
    fetch_like_statuses,
    group_by,
    hours_since,
    iso_now,
    replace_in,
    toggle_relation,
    user_id,
)
from optiq.types import CacheKey, Identity

EDIT_WINDOW_HOURS = 24
ACTIVE_ENROLLMENT = "active"

review_keys = define_keys(
    {
        "all": lambda: ("reviews",),
        "lists": lambda: ("reviews", "list"),
        "list": lambda lecture_id: ("reviews", "list", lecture_id),
    }
)


def average_rating(reviews: Sequence[Row]) -> float:
    ratings = [r["rating"] for r in reviews if r.get("rating") is not None]
    if not ratings:
        return 0.0
    return round(sum(ratings) / len(ratings), 1)


def _profile(profile: Row | None) -> Row:
    profile = profile or {}
    return {
        "name": profile.get("name") or "익명",
        "nickname": profile.get("nickname"),
        "avatar_url": profile.get("avatar_url"),
    }


def _with_like(row: Row, status: LikeStatus) -> Row:
    return {**row, "likes_count": status.likes_count, "is_liked": status.is_liked}


def _flip_like(row: Row) -> Row:
    status = LikeStatus(is_liked=bool(row.get("is_liked")), likes_count=row.get("likes_count") or 0)
    return _with_like(row, status.flipped())


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_reviews(backend: RemoteBackend, lecture_id: Hashable, user: str | None) -> list[Row]:
    """Reviews newest first, each with author profile, likes and replies."""
    reviews = await backend.select(
        "reviews", filters=[eq("lecture_id", lecture_id)], order=Order("created_at", ascending=False)
    )
    if not reviews:
        return []

    review_ids = [r["id"] for r in reviews]
    replies = await backend.select(
        "review_replies", filters=[in_("review_id", review_ids)], order=Order("created_at")
    )
    author_ids = list(dict.fromkeys(r["user_id"] for r in [*reviews, *replies]))
    profiles = await backend.select(
        "profiles", filters=[in_("id", author_ids)], columns="id,name,nickname,avatar_url"
    )
    by_id = {p["id"]: p for p in profiles}
    review_likes = await fetch_like_statuses(backend, "review_likes", "review_id", review_ids, user)
    reply_likes = await fetch_like_statuses(
        backend, "review_reply_likes", "reply_id", [r["id"] for r in replies], user
    )
    replies_by_review = group_by(
        (
            _with_like({**r, "user_profile": _profile(by_id.get(r["user_id"]))}, reply_likes[r["id"]])
            for r in replies
        ),
        "review_id",
    )
    return [
        _with_like(
            {
                **r,
                "user_profile": _profile(by_id.get(r["user_id"])),
                "replies": replies_by_review.get(r["id"], []),
            },
            review_likes[r["id"]],
        )
        for r in reviews
    ]


async def create_review(
    backend: RemoteBackend, user: str, lecture_id: Hashable, rating: int, content: str
) -> Row:
    """Write a review; the author needs an active enrollment and no prior review."""
    enrollment = await select_one(
        backend,
        "enrollments",
        filters=[eq("lecture_id", lecture_id), eq("user_id", user)],
        columns="status",
    )
    if enrollment is None or enrollment.get("status") != ACTIVE_ENROLLMENT:
        raise AuthorizationDenied("수강 중인 강의만 수강평을 작성할 수 있습니다.")
    existing = await select_one(
        backend, "reviews", filters=[eq("lecture_id", lecture_id), eq("user_id", user)], columns="id"
    )
    if existing is not None:
        raise Conflict("이미 수강평이 작성하였습니다.")

    (row,) = await backend.insert(
        "reviews", {"lecture_id": lecture_id, "user_id": user, "rating": rating, "content": content}
    )
    profile = await select_one(
        backend, "profiles", filters=[eq("id", user)], columns="id,name,nickname,avatar_url"
    )
    return {**row, "user_profile": _profile(profile), "likes_count": 0, "is_liked": False, "replies": []}


async def _own_review(backend: RemoteBackend, user: str, review_id: Hashable, action: str) -> Row:
    row = await select_one(backend, "reviews", filters=[eq("id", review_id)])
    if row is None:
        raise NotFound("리뷰를 찾을 수 없습니다.")
    if row.get("user_id") != user:
        raise AuthorizationDenied(f"본인이 작성한 리뷰만 {action}할 수 있습니다.")
    return row


async def update_review(backend: RemoteBackend, user: str, review_id: Hashable, content: str) -> Row:
    """Edit a review; only its author may, and only within 24 hours."""
    row = await _own_review(backend, user, review_id, "수정")
    if hours_since(row["created_at"]) > EDIT_WINDOW_HOURS:
        raise AuthorizationDenied("작성 후 24시간이 지난 리뷰는 수정할 수 없습니다.")
    updated = await backend.update(
        "reviews",
        {"content": content, "updated_at": iso_now()},
        filters=[eq("id", review_id), eq("user_id", user)],
    )
    if not updated:
        raise NotFound("리뷰를 찾을 수 없습니다.")
    return updated[0]


async def delete_review(backend: RemoteBackend, user: str, review_id: Hashable) -> bool:
    """Delete a review; only its author may."""
    await _own_review(backend, user, review_id, "삭제")
    deleted = await backend.delete("reviews", filters=[eq("id", review_id), eq("user_id", user)])
    if not deleted:
        raise NotFound("리뷰를 찾을 수 없습니다.")
    return True


async def toggle_like(backend: RemoteBackend, user: str, review_id: Hashable) -> bool:
    return await toggle_relation(backend, "review_likes", "review_id", review_id, user)


async def add_reply(backend: RemoteBackend, user: str, review_id: Hashable, content: str) -> Row:
    (row,) = await backend.insert(
        "review_replies", {"review_id": review_id, "user_id": user, "content": content}
    )
    profile = await select_one(
        backend, "profiles", filters=[eq("id", user)], columns="id,name,nickname,avatar_url"
    )
    return {**row, "user_profile": _profile(profile), "likes_count": 0, "is_liked": False}


async def _own_reply(backend: RemoteBackend, user: str, reply_id: Hashable, action: str) -> Row:
    row = await select_one(backend, "review_replies", filters=[eq("id", reply_id)])
    if row is None:
        raise NotFound("답글을 찾을 수 없습니다.")
    if row.get("user_id") != user:
        raise AuthorizationDenied(f"본인이 작성한 답글만 {action}할 수 있습니다.")
    return row


async def update_reply(backend: RemoteBackend, user: str, reply_id: Hashable, content: str) -> Row:
    """Edit a reply; only its author may, and only within 24 hours."""
    row = await _own_reply(backend, user, reply_id, "수정")
    if hours_since(row["created_at"]) > EDIT_WINDOW_HOURS:
        raise AuthorizationDenied("작성 후 24시간이 지난 답글은 수정할 수 없습니다.")
    (updated,) = await backend.update(
        "review_replies", {"content": content}, filters=[eq("id", reply_id), eq("user_id", user)]
    )
    return updated


async def delete_reply(backend: RemoteBackend, user: str, reply_id: Hashable) -> bool:
    await _own_reply(backend, user, reply_id, "삭제")
    await backend.delete("review_replies", filters=[eq("id", reply_id), eq("user_id", user)])
    return True


async def toggle_reply_like(backend: RemoteBackend, user: str, reply_id: Hashable) -> bool:
    return await toggle_relation(backend, "review_reply_likes", "reply_id", reply_id, user)


def _map_reply(reviews: list[Row], reply_id: Hashable, fn: Any) -> list[Row]:
    """Apply ``fn`` to the reply with ``reply_id`` wherever it is nested."""
    result = []
    for review in reviews:
        replies = review.get("replies") or []
        if any(r.get("id") == reply_id for r in replies):
            review = {
                **review,
                "replies": [fn(r) if r.get("id") == reply_id else r for r in replies],
            }
        result.append(review)
    return result


def _find_reply(reviews: list[Row], reply_id: Hashable) -> Row | None:
    return next(
        (r for review in reviews for r in review.get("replies") or [] if r.get("id") == reply_id),
        None,
    )


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def reviews(client: QueryClient, lecture_id: Hashable) -> list[Row]:
    user = user_id(client.identity())
    return await client.query(
        review_keys["list"](lecture_id),
        lambda: fetch_reviews(client.backend, lecture_id, user),
        stale_time="1m",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class CreateReview(Mutation[Row]):
    name = "create_review"
    failure_message = "수강평 작성에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, lecture_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        lecture_id: Hashable,
        rating: int,
        content: str,
    ) -> Row:
        identity = signed_in(identity)
        return await create_review(backend, identity.id, lecture_id, rating, content)

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        return KEEP if current is None else [result, *current]

    def success_message(self, result: Row, **_: Any) -> str:
        return "수강평이 등록되었습니다."


class UpdateReview(Mutation[Row]):
    name = "update_review"
    failure_message = "수강평 수정에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, lecture_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        review_id: Hashable,
        content: str,
        **_: Any,
    ) -> Any:
        if current is None:
            return SKIP
        return replace_in(current, review_id, content=content, updated_at=iso_now())

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        review_id: Hashable,
        content: str,
        **_: Any,
    ) -> Row:
        identity = signed_in(identity)
        return await update_review(backend, identity.id, review_id, content)

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        if current is None:
            return KEEP
        return replace_in(current, result["id"], content=result["content"], updated_at=result.get("updated_at"))

    def success_message(self, result: Row, **_: Any) -> str:
        return "수강평이 수정되었습니다."


class DeleteReview(Mutation[bool]):
    name = "delete_review"
    failure_message = "수강평 삭제에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, lecture_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        review_id: Hashable,
        **_: Any,
    ) -> Any:
        if current is None:
            return SKIP
        return [r for r in current if r.get("id") != review_id]

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, review_id: Hashable, **_: Any
    ) -> bool:
        identity = signed_in(identity)
        return await delete_review(backend, identity.id, review_id)

    def on_error_invalidates(
        self, identity: Identity | None, error: BaseException, *, lecture_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]

    def success_message(self, result: bool, **_: Any) -> str:
        return "수강평이 삭제되었습니다."


class ToggleReviewLike(Mutation[bool]):
    name = "toggle_review_like"
    failure_message = "좋아요 처리에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, lecture_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        review_id: Hashable,
        **_: Any,
    ) -> Any:
        if current is None or not any(r.get("id") == review_id for r in current):
            return SKIP
        return [_flip_like(r) if r.get("id") == review_id else r for r in current]

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, review_id: Hashable, **_: Any
    ) -> bool:
        identity = signed_in(identity)
        return await toggle_like(backend, identity.id, review_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: bool,
        identity: Identity | None,
        *,
        review_id: Hashable,
        **_: Any,
    ) -> Any:
        target = next((r for r in current or [] if r.get("id") == review_id), None)
        if target is None or bool(target.get("is_liked")) == result:
            return KEEP
        return [_flip_like(r) if r.get("id") == review_id else r for r in current]

    def success_message(self, result: bool, **_: Any) -> str:
        return "좋아요를 눌렀습니다." if result else "좋아요를 취소했습니다."


class _ReplyMutation(Mutation[Any]):
    def affected_keys(self, identity: Identity | None, *, lecture_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [review_keys["list"](lecture_id)]


class AddReviewReply(_ReplyMutation):
    """Append a reply once the server returns it; no placeholder is shown."""

    name = "add_review_reply"
    failure_message = "답글 작성에 실패했습니다."

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        review_id: Hashable,
        content: str,
        **_: Any,
    ) -> Row:
        identity = signed_in(identity)
        return await add_reply(backend, identity.id, review_id, content)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: Row,
        identity: Identity | None,
        *,
        review_id: Hashable,
        **_: Any,
    ) -> Any:
        if current is None:
            return KEEP
        return [
            {**r, "replies": [*(r.get("replies") or []), result]} if r.get("id") == review_id else r
            for r in current
        ]

    def success_message(self, result: Row, **_: Any) -> str:
        return "답글이 등록되었습니다."


class UpdateReviewReply(_ReplyMutation):
    name = "update_review_reply"
    failure_message = "답글 수정에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        reply_id: Hashable,
        content: str,
        **_: Any,
    ) -> Any:
        if current is None or _find_reply(current, reply_id) is None:
            return SKIP
        return _map_reply(current, reply_id, lambda r: {**r, "content": content})

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        reply_id: Hashable,
        content: str,
        **_: Any,
    ) -> Row:
        identity = signed_in(identity)
        return await update_reply(backend, identity.id, reply_id, content)

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        if current is None:
            return KEEP
        return _map_reply(current, result["id"], lambda r: {**r, "content": result["content"]})

    def success_message(self, result: Row, **_: Any) -> str:
        return "답글이 수정되었습니다."


class DeleteReviewReply(_ReplyMutation):
    name = "delete_review_reply"
    failure_message = "답글 삭제에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        reply_id: Hashable,
        **_: Any,
    ) -> Any:
        if current is None or _find_reply(current, reply_id) is None:
            return SKIP
        return [
            {**r, "replies": [p for p in r.get("replies") or [] if p.get("id") != reply_id]}
            for r in current
        ]

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, reply_id: Hashable, **_: Any
    ) -> bool:
        identity = signed_in(identity)
        return await delete_reply(backend, identity.id, reply_id)

    def success_message(self, result: bool, **_: Any) -> str:
        return "답글이 삭제되었습니다."


class ToggleReplyLike(_ReplyMutation):
    name = "toggle_reply_like"
    failure_message = "좋아요 처리에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        reply_id: Hashable,
        **_: Any,
    ) -> Any:
        if current is None or _find_reply(current, reply_id) is None:
            return SKIP
        return _map_reply(current, reply_id, _flip_like)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, reply_id: Hashable, **_: Any
    ) -> bool:
        identity = signed_in(identity)
        return await toggle_reply_like(backend, identity.id, reply_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: bool,
        identity: Identity | None,
        *,
        reply_id: Hashable,
        **_: Any,
    ) -> Any:
        target = _find_reply(current or [], reply_id)
        if target is None or bool(target.get("is_liked")) == result:
            return KEEP
        return _map_reply(current, reply_id, _flip_like)


__all__ = [
    "AddReviewReply",
    "CreateReview",
    "DeleteReview",
    "DeleteReviewReply",
    "ToggleReplyLike",
    "ToggleReviewLike",
    "UpdateReview",
    "UpdateReviewReply",
    "add_reply",
    "average_rating",
    "create_review",
    "delete_reply",
    "delete_review",
    "fetch_reviews",
    "review_keys",
    "reviews",
    "toggle_like",
    "toggle_reply_like",
    "update_reply",
    "update_review",
]
