"""Post comments, replies and comment likes."""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, in_, select_one
from optiq.client import QueryClient
from optiq.errors import AuthorizationDenied, Conflict, NotFound
from optiq.keys import KeyTarget, batch_key, contains_member, define_keys, under
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import (
    LikeStatus,
    fetch_like_status,
    fetch_like_statuses,
    hours_since,
    iso_now,
    toggle_relation,
    user_id,
)
from optiq.store import CacheStore
from optiq.types import CacheKey, Identity

EDIT_WINDOW_HOURS = 24
LIKE_BATCH_ROOT = "comments-like-status"

comment_keys = define_keys(
    {
        "all": lambda: ("comments",),
        "lists": lambda: ("comments", "list"),
        "list": lambda post_id: ("comments", "list", post_id),
        "like_status": lambda comment_id: ("comment-like-status", comment_id),
    }
)


def like_batch_key(comment_ids: Sequence[Hashable]) -> CacheKey:
    return batch_key(LIKE_BATCH_ROOT, comment_ids)


def _decorate(row: Row, profile: Row | None, likes: LikeStatus | None) -> Row:
    return {
        **row,
        "author_name": (profile or {}).get("nickname") or (profile or {}).get("name") or "익명",
        "author_avatar": (profile or {}).get("avatar_url"),
        "likes_count": likes.likes_count if likes else 0,
        "is_liked": likes.is_liked if likes else False,
        "replies": [],
    }


def _map_tree(comments: list[Row], comment_id: Hashable, fn: Any) -> list[Row]:
    """Apply ``fn`` to the comment or reply with ``comment_id``."""
    result = []
    for comment in comments:
        if comment.get("id") == comment_id:
            result.append(fn(comment))
            continue
        replies = comment.get("replies") or []
        if any(r.get("id") == comment_id for r in replies):
            comment = {
                **comment,
                "replies": [fn(r) if r.get("id") == comment_id else r for r in replies],
            }
        result.append(comment)
    return result


def _drop_from_tree(comments: list[Row], comment_id: Hashable) -> list[Row]:
    return [
        {**c, "replies": [r for r in c.get("replies") or [] if r.get("id") != comment_id]}
        for c in comments
        if c.get("id") != comment_id
    ]


def _in_tree(comments: list[Row], comment_id: Hashable) -> bool:
    return any(
        c.get("id") == comment_id or any(r.get("id") == comment_id for r in c.get("replies") or [])
        for c in comments
    )


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_comments(backend: RemoteBackend, post_id: Hashable, user: str | None) -> list[Row]:
    """Top-level comments oldest first, each with its replies nested."""
    rows = await backend.select(
        "post_comments", filters=[eq("post_id", post_id)], order=Order("created_at")
    )
    if not rows:
        return []

    author_ids = list(dict.fromkeys(r["author_id"] for r in rows))
    profiles = await backend.select(
        "profiles", filters=[in_("id", author_ids)], columns="id,name,nickname,avatar_url"
    )
    by_author = {p["id"]: p for p in profiles}
    likes = await fetch_like_statuses(
        backend, "comment_likes", "comment_id", [r["id"] for r in rows], user
    )

    decorated = [_decorate(r, by_author.get(r["author_id"]), likes.get(r["id"])) for r in rows]
    top = [c for c in decorated if c.get("parent_id") is None]
    by_id = {c["id"]: c for c in top}
    for comment in decorated:
        parent = by_id.get(comment.get("parent_id"))
        if parent is not None:
            parent["replies"].append(comment)
    return top


async def create_comment(
    backend: RemoteBackend,
    user: str,
    post_id: Hashable,
    content: str,
    parent_id: Hashable | None = None,
) -> Row:
    (row,) = await backend.insert(
        "post_comments",
        {"post_id": post_id, "author_id": user, "content": content, "parent_id": parent_id},
    )
    profile = await select_one(
        backend, "profiles", filters=[eq("id", user)], columns="id,name,nickname,avatar_url"
    )
    return _decorate(row, profile, None)


async def _own_comment(backend: RemoteBackend, user: str, comment_id: Hashable, action: str) -> Row:
    row = await select_one(backend, "post_comments", filters=[eq("id", comment_id)])
    if row is None:
        raise NotFound("댓글을 찾을 수 없습니다.")
    if row.get("author_id") != user:
        raise AuthorizationDenied(f"본인이 작성한 댓글만 {action}할 수 있습니다.")
    return row


async def update_comment(
    backend: RemoteBackend, user: str, comment_id: Hashable, content: str
) -> Row:
    """Edit a comment; only its author may, and only within 24 hours."""
    row = await _own_comment(backend, user, comment_id, "수정")
    if hours_since(row["created_at"]) > EDIT_WINDOW_HOURS:
        raise AuthorizationDenied("작성 후 24시간이 지난 댓글은 수정할 수 없습니다.")
    updated = await backend.update(
        "post_comments",
        {"content": content, "updated_at": iso_now()},
        filters=[eq("id", comment_id), eq("author_id", user)],
    )
    if not updated:
        raise NotFound("댓글을 찾을 수 없습니다.")
    return updated[0]


async def delete_comment(backend: RemoteBackend, user: str, comment_id: Hashable) -> bool:
    """Delete a comment; a comment that has replies is refused."""
    await _own_comment(backend, user, comment_id, "삭제")
    if await backend.count("post_comments", filters=[eq("parent_id", comment_id)]):
        raise Conflict("답글이 있는 댓글은 삭제할 수 없습니다.")
    await backend.delete("post_comments", filters=[eq("id", comment_id), eq("author_id", user)])
    return True


async def toggle_like(backend: RemoteBackend, user: str, comment_id: Hashable) -> bool:
    return await toggle_relation(backend, "comment_likes", "comment_id", comment_id, user)


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def comments(client: QueryClient, post_id: Hashable) -> list[Row]:
    user = user_id(client.identity())
    return await client.query(
        comment_keys["list"](post_id),
        lambda: fetch_comments(client.backend, post_id, user),
        stale_time=0,
    )


async def comment_like_status(client: QueryClient, comment_id: Hashable) -> LikeStatus:
    user = user_id(client.identity())
    return await client.query(
        comment_keys["like_status"](comment_id),
        lambda: fetch_like_status(client.backend, "comment_likes", "comment_id", comment_id, user),
        stale_time="5m",
    )


async def comment_like_statuses(
    client: QueryClient, comment_ids: Sequence[Hashable]
) -> dict[Hashable, LikeStatus]:
    if not comment_ids:
        return {}
    user = user_id(client.identity())
    return await client.query(
        like_batch_key(comment_ids),
        lambda: fetch_like_statuses(
            client.backend, "comment_likes", "comment_id", comment_ids, user
        ),
        stale_time="5m",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class CreateComment(Mutation[Row]):
    name = "create_comment"
    failure_message = "댓글 작성에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, post_id: Hashable, **_: Any) -> list[KeyTarget]:
        return [comment_keys["list"](post_id)]

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        post_id: Hashable,
        content: str,
        parent_id: Hashable | None = None,
    ) -> Row:
        identity = signed_in(identity)
        return await create_comment(backend, identity.id, post_id, content, parent_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: Row,
        identity: Identity | None,
        *,
        parent_id: Hashable | None = None,
        **_: Any,
    ) -> Any:
        if current is None:
            return KEEP
        if parent_id is None:
            return [*current, result]
        return _map_tree(
            current, parent_id, lambda c: {**c, "replies": [*(c.get("replies") or []), result]}
        )

    def on_success_invalidates(
        self, identity: Identity | None, result: Row, *, post_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [comment_keys["list"](post_id)]

    def success_message(self, result: Row, *, parent_id: Hashable | None = None, **_: Any) -> str:
        return "답글이 등록되었습니다." if parent_id else "댓글이 등록되었습니다."


class UpdateComment(Mutation[Row]):
    """Edit a comment in every cached comment list that holds it."""

    name = "update_comment"
    failure_message = "댓글 수정에 실패했습니다."

    def affected_keys(self, identity: Identity | None, **_: Any) -> list[KeyTarget]:
        return [under(*comment_keys["lists"]())]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        comment_id: Hashable,
        content: str,
    ) -> Any:
        if current is None or not _in_tree(current, comment_id):
            return SKIP
        now = iso_now()
        return _map_tree(current, comment_id, lambda c: {**c, "content": content, "updated_at": now})

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, comment_id: Hashable, content: str
    ) -> Row:
        identity = signed_in(identity)
        return await update_comment(backend, identity.id, comment_id, content)

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        if current is None or not _in_tree(current, result["id"]):
            return KEEP
        return _map_tree(current, result["id"], lambda c: {**c, **result})

    def success_message(self, result: Row, **_: Any) -> str:
        return "댓글이 수정되었습니다."


class DeleteComment(Mutation[bool]):
    name = "delete_comment"
    failure_message = "댓글 삭제에 실패했습니다."

    def authorize(
        self, store: CacheStore, identity: Identity | None, *, comment_id: Hashable
    ) -> None:
        for key in store.keys(under(*comment_keys["lists"]())):
            for comment in store.get_value(key) or []:
                if comment.get("id") == comment_id and comment.get("replies"):
                    raise Conflict("답글이 있는 댓글은 삭제할 수 없습니다.")

    def affected_keys(self, identity: Identity | None, **_: Any) -> list[KeyTarget]:
        return [under(*comment_keys["lists"]())]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        comment_id: Hashable,
    ) -> Any:
        if current is None or not _in_tree(current, comment_id):
            return SKIP
        return _drop_from_tree(current, comment_id)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, comment_id: Hashable
    ) -> bool:
        identity = signed_in(identity)
        return await delete_comment(backend, identity.id, comment_id)

    def on_success_removes(
        self, identity: Identity | None, result: bool, *, comment_id: Hashable
    ) -> list[KeyTarget]:
        return [comment_keys["like_status"](comment_id)]

    def on_success_invalidates(
        self, identity: Identity | None, result: bool, *, comment_id: Hashable
    ) -> list[KeyTarget]:
        return [contains_member(LIKE_BATCH_ROOT, comment_id)]

    def success_message(self, result: bool, **_: Any) -> str:
        return "댓글이 삭제되었습니다."


class ToggleCommentLike(Mutation[bool]):
    name = "toggle_comment_like"
    failure_message = "좋아요 처리에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, comment_id: Hashable) -> list[KeyTarget]:
        return [
            comment_keys["like_status"](comment_id),
            contains_member(LIKE_BATCH_ROOT, comment_id),
        ]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        comment_id: Hashable,
    ) -> Any:
        if current is None:
            return SKIP
        if key[0] != LIKE_BATCH_ROOT:
            return current.flipped()
        if comment_id not in current:
            return SKIP
        return {**current, comment_id: current[comment_id].flipped()}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, comment_id: Hashable
    ) -> bool:
        identity = signed_in(identity)
        return await toggle_like(backend, identity.id, comment_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: bool,
        identity: Identity | None,
        *,
        comment_id: Hashable,
    ) -> Any:
        if key[0] != LIKE_BATCH_ROOT:
            if current is None or current.is_liked == result:
                return KEEP
            return current.flipped()
        if current is None or comment_id not in current or current[comment_id].is_liked == result:
            return KEEP
        return {**current, comment_id: current[comment_id].flipped()}

    def on_error_invalidates(
        self, identity: Identity | None, error: BaseException, *, comment_id: Hashable
    ) -> list[KeyTarget]:
        return [contains_member(LIKE_BATCH_ROOT, comment_id)]

    def success_message(self, result: bool, **_: Any) -> str:
        return "좋아요를 눌렀습니다." if result else "좋아요를 취소했습니다."


__all__ = [
    "CreateComment",
    "DeleteComment",
    "ToggleCommentLike",
    "UpdateComment",
    "comment_keys",
    "comment_like_status",
    "comment_like_statuses",
    "comments",
    "create_comment",
    "delete_comment",
    "fetch_comments",
    "like_batch_key",
    "toggle_like",
    "update_comment",
]
