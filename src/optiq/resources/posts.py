"""Community post likes and view counts."""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import RemoteBackend, eq, in_, select_one
from optiq.client import QueryClient
from optiq.errors import NotFound
from optiq.keys import KeyPredicate, KeyTarget, define_keys
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import (
    LikeStatus,
    fetch_like_status,
    toggle_relation,
    user_id,
)
from optiq.types import CacheKey, Identity

REPEAT_VIEW_WINDOW_MS = 2000

post_keys = define_keys(
    {
        "all": lambda: ("posts",),
        "like_status": lambda post_id: ("post-like-status", post_id),
        "view_lists": lambda: ("postView", "list"),
        "view_list": lambda post_ids: ("postView", "list", *sorted(post_ids)),
        "view": lambda post_id: ("postView", "detail", post_id),
    }
)


@dataclass(frozen=True, slots=True)
class PostViewCount:
    post_id: int
    views: int


def view_lists_containing(post_id: Hashable) -> KeyPredicate:
    prefix = post_keys["view_lists"]()
    return lambda key: key[: len(prefix)] == prefix and post_id in key[len(prefix) :]


class ViewTracker:
    """Posts already viewed in this session, with the time of the last view."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._viewed: set[Hashable] = set()
        self._timestamps: dict[Hashable, float] = {}

    def viewed_recently(self, post_id: Hashable) -> bool:
        last = self._timestamps.get(post_id)
        if last is not None and self._clock() - last < REPEAT_VIEW_WINDOW_MS:
            return True
        return post_id in self._viewed

    def mark(self, post_id: Hashable) -> None:
        self._viewed.add(post_id)
        self._timestamps[post_id] = self._clock()

    def forget(self, post_id: Hashable) -> None:
        self._viewed.discard(post_id)
        self._timestamps.pop(post_id, None)


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_like_status_for_post(
    backend: RemoteBackend, post_id: Hashable, user: str | None
) -> LikeStatus:
    return await fetch_like_status(backend, "post_likes", "post_id", post_id, user)


async def toggle_like(backend: RemoteBackend, user: str, post_id: Hashable) -> bool:
    return await toggle_relation(backend, "post_likes", "post_id", post_id, user)


async def fetch_view_count(backend: RemoteBackend, post_id: int) -> PostViewCount:
    row = await select_one(backend, "community_posts", filters=[eq("id", post_id)], columns="id,views")
    if row is None:
        raise NotFound("게시글을 찾을 수 없습니다.")
    return PostViewCount(post_id=row["id"], views=row.get("views") or 0)


async def fetch_view_counts(backend: RemoteBackend, post_ids: Sequence[int]) -> dict[int, int]:
    if not post_ids:
        return {}
    rows = await backend.select(
        "community_posts", filters=[in_("id", post_ids)], columns="id,views"
    )
    return {row["id"]: row.get("views") or 0 for row in rows}


async def increment_view(backend: RemoteBackend, post_id: int) -> None:
    await backend.rpc("increment_post_view", {"post_id": post_id})


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def post_like_status(client: QueryClient, post_id: Hashable) -> LikeStatus:
    user = user_id(client.identity())
    return await client.query(
        post_keys["like_status"](post_id),
        lambda: fetch_like_status_for_post(client.backend, post_id, user),
        stale_time="5m",
    )


async def post_view_count(client: QueryClient, post_id: int) -> PostViewCount:
    return await client.query(
        post_keys["view"](post_id),
        lambda: fetch_view_count(client.backend, post_id),
        stale_time="30s",
    )


async def post_view_counts(client: QueryClient, post_ids: Sequence[int]) -> dict[int, int]:
    if not post_ids:
        return {}
    return await client.query(
        post_keys["view_list"](post_ids),
        lambda: fetch_view_counts(client.backend, post_ids),
        stale_time="30s",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class TogglePostLike(Mutation[bool]):
    name = "toggle_post_like"
    failure_message = "좋아요 처리에 실패했습니다."

    def affected_keys(self, identity: Identity | None, *, post_id: Hashable) -> list[KeyTarget]:
        return [post_keys["like_status"](post_id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        post_id: Hashable,
    ) -> Any:
        return SKIP if current is None else current.flipped()

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, post_id: Hashable
    ) -> bool:
        identity = signed_in(identity)
        return await toggle_like(backend, identity.id, post_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: bool,
        identity: Identity | None,
        *,
        post_id: Hashable,
    ) -> Any:
        if current is None or current.is_liked == result:
            return KEEP
        return current.flipped()

    def on_success_invalidates(
        self, identity: Identity | None, result: bool, *, post_id: Hashable
    ) -> list[KeyTarget]:
        return [post_keys["all"]()]

    def success_message(self, result: bool, **_: Any) -> str:
        return "좋아요를 눌렀습니다." if result else "좋아요를 취소했습니다."


class IncrementPostView(Mutation[bool]):
    """Count a view once per session; repeat views are not sent.

    Anonymous visitors count too. Returns whether a view was recorded.
    """

    name = "increment_post_view"
    requires_auth = False
    failure_message = "조회수 증가에 실패했습니다."

    def __init__(self, tracker: ViewTracker | None = None) -> None:
        self.tracker = tracker or ViewTracker()

    def affected_keys(self, identity: Identity | None, *, post_id: int) -> list[KeyTarget]:
        return [post_keys["view"](post_id)]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        post_id: int,
    ) -> Any:
        if current is None or self.tracker.viewed_recently(post_id):
            return SKIP
        return PostViewCount(post_id=current.post_id, views=current.views + 1)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, post_id: int
    ) -> bool:
        if self.tracker.viewed_recently(post_id):
            return False
        self.tracker.mark(post_id)
        try:
            await increment_view(backend, post_id)
        except Exception:
            self.tracker.forget(post_id)
            raise
        return True

    def on_success_invalidates(
        self, identity: Identity | None, result: bool, *, post_id: int
    ) -> list[KeyTarget]:
        return [view_lists_containing(post_id)] if result else []


__all__ = [
    "IncrementPostView",
    "PostViewCount",
    "TogglePostLike",
    "ViewTracker",
    "fetch_like_status_for_post",
    "fetch_view_count",
    "fetch_view_counts",
    "increment_view",
    "post_keys",
    "post_like_status",
    "post_view_count",
    "post_view_counts",
    "toggle_like",
    "view_lists_containing",
]
