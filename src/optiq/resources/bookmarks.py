"""Bookmarks on posts, studies and lectures.

All three kinds share one table layout (``user_id`` plus a foreign key) and
are cached under the same three key shapes: a per-item status, a paged list
and a batch status keyed by sorted ``"{kind}-{id}"`` members.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, in_, select_one
from optiq.client import QueryClient
from optiq.keys import KeyTarget, batch_key, batch_member, contains_member, define_keys, under
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import attach, toggle_relation, user_id
from optiq.types import CacheKey, Identity

BookmarkKind = Literal["post", "study", "lecture"]

BATCH_ROOT = "bookmarks-batch-status"


@dataclass(frozen=True, slots=True)
class BookmarkConfig:
    table: str
    foreign_key: str
    prefix: str
    target_table: str
    label: str


BOOKMARK_CONFIGS: dict[str, BookmarkConfig] = {
    "post": BookmarkConfig("post_bookmarks", "post_id", "post-bookmark", "community_posts", "게시글"),
    "study": BookmarkConfig("study_bookmarks", "study_id", "study-bookmark", "studies", "스터디"),
    "lecture": BookmarkConfig("bookmarks", "lecture_id", "lecture-bookmark", "lectures", "강의"),
}


@dataclass(frozen=True, slots=True)
class BookmarkStatus:
    is_bookmarked: bool


def config_for(kind: str) -> BookmarkConfig:
    try:
        return BOOKMARK_CONFIGS[kind]
    except KeyError:
        raise ValueError(f"Unknown bookmark kind: {kind!r}") from None


bookmark_keys = define_keys(
    {
        "all": lambda kind: (config_for(kind).prefix,),
        "status": lambda kind, item_id: (config_for(kind).prefix, "status", item_id),
        "lists": lambda kind: (config_for(kind).prefix, "list"),
        "list": lambda kind, page, limit: (config_for(kind).prefix, "list", page, limit),
    }
)


def batch_status_key(items: Iterable[tuple[str, Hashable]]) -> CacheKey:
    return batch_key(BATCH_ROOT, (batch_member(kind, item_id) for kind, item_id in items))


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_status(
    backend: RemoteBackend, user: str | None, kind: str, item_id: Hashable
) -> BookmarkStatus:
    if user is None:
        return BookmarkStatus(is_bookmarked=False)
    cfg = config_for(kind)
    row = await select_one(
        backend,
        cfg.table,
        filters=[eq(cfg.foreign_key, item_id), eq("user_id", user)],
        columns="id",
    )
    return BookmarkStatus(is_bookmarked=row is not None)


async def fetch_batch_status(
    backend: RemoteBackend, user: str | None, items: Sequence[tuple[str, Hashable]]
) -> dict[str, BookmarkStatus]:
    """Status for many items at once; one select per kind."""
    result = {batch_member(k, i): BookmarkStatus(is_bookmarked=False) for k, i in items}
    if user is None:
        return result

    by_kind: dict[str, list[Hashable]] = {}
    for kind, item_id in items:
        by_kind.setdefault(kind, []).append(item_id)

    for kind, ids in by_kind.items():
        cfg = config_for(kind)
        rows = await backend.select(
            cfg.table,
            filters=[eq("user_id", user), in_(cfg.foreign_key, ids)],
            columns=cfg.foreign_key,
        )
        for row in rows:
            result[batch_member(kind, row[cfg.foreign_key])] = BookmarkStatus(is_bookmarked=True)
    return result


async def fetch_list(
    backend: RemoteBackend, user: str, kind: str, *, page: int = 1, limit: int = 10
) -> list[Row]:
    """Newest-first bookmarks with the bookmarked row attached."""
    cfg = config_for(kind)
    rows = await backend.select(
        cfg.table,
        filters=[eq("user_id", user)],
        order=Order("created_at", ascending=False),
        offset=(page - 1) * limit,
        limit=limit,
    )
    return await attach(
        backend, rows, table=cfg.target_table, foreign_key=cfg.foreign_key, as_name=kind
    )


async def toggle(backend: RemoteBackend, user: str, kind: str, item_id: Hashable) -> bool:
    """Delete the bookmark if present, insert it otherwise; return the new state."""
    cfg = config_for(kind)
    return await toggle_relation(backend, cfg.table, cfg.foreign_key, item_id, user)


async def delete_many(
    backend: RemoteBackend, user: str, kind: str, item_ids: Sequence[Hashable]
) -> int:
    cfg = config_for(kind)
    deleted = await backend.delete(
        cfg.table, filters=[eq("user_id", user), in_(cfg.foreign_key, item_ids)]
    )
    return len(deleted)


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def bookmark_status(client: QueryClient, kind: str, item_id: Hashable) -> BookmarkStatus:
    user = user_id(client.identity())
    return await client.query(
        bookmark_keys["status"](kind, item_id),
        lambda: fetch_status(client.backend, user, kind, item_id),
        stale_time="30s",
        retry=3,
    )


async def bookmark_statuses(
    client: QueryClient, items: Sequence[tuple[str, Hashable]]
) -> dict[str, BookmarkStatus]:
    user = user_id(client.identity())
    return await client.query(
        batch_status_key(items),
        lambda: fetch_batch_status(client.backend, user, items),
        stale_time="5m",
    )


async def bookmark_list(
    client: QueryClient, kind: str, *, page: int = 1, limit: int = 10
) -> list[Row]:
    user = user_id(client.identity())
    if user is None:
        return []
    return await client.query(
        bookmark_keys["list"](kind, page, limit),
        lambda: fetch_list(client.backend, user, kind, page=page, limit=limit),
        stale_time="5m",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class ToggleBookmark(Mutation[bool]):
    """Flip one item's bookmark in its status key and every batch holding it."""

    name = "toggle_bookmark"
    failure_message = "북마크 처리에 실패했습니다."

    def affected_keys(
        self, identity: Identity | None, *, kind: str, item_id: Hashable
    ) -> list[KeyTarget]:
        return [
            bookmark_keys["status"](kind, item_id),
            contains_member(BATCH_ROOT, batch_member(kind, item_id)),
        ]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        kind: str,
        item_id: Hashable,
    ) -> Any:
        if current is None:
            return SKIP
        if key[0] != BATCH_ROOT:
            return BookmarkStatus(is_bookmarked=not current.is_bookmarked)
        member = batch_member(kind, item_id)
        if member not in current:
            return SKIP
        return {**current, member: BookmarkStatus(is_bookmarked=not current[member].is_bookmarked)}

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, kind: str, item_id: Hashable
    ) -> bool:
        identity = signed_in(identity)
        return await toggle(backend, identity.id, kind, item_id)

    def reconcile(
        self,
        key: CacheKey,
        current: Any,
        result: bool,
        identity: Identity | None,
        *,
        kind: str,
        item_id: Hashable,
    ) -> Any:
        if key[0] != BATCH_ROOT:
            return BookmarkStatus(is_bookmarked=result)
        member = batch_member(kind, item_id)
        if current is None or member not in current:
            return KEEP
        return {**current, member: BookmarkStatus(is_bookmarked=result)}

    def on_error_invalidates(
        self, identity: Identity | None, error: BaseException, *, kind: str, item_id: Hashable
    ) -> list[KeyTarget]:
        return [under(BATCH_ROOT)]

    def on_success_invalidates(
        self, identity: Identity | None, result: bool, *, kind: str, item_id: Hashable
    ) -> list[KeyTarget]:
        targets: list[KeyTarget] = [bookmark_keys["lists"](kind)]
        if kind == "post":
            targets.append(CacheKey(("posts",)))
        return targets

    def success_message(self, result: bool, *, kind: str, item_id: Hashable) -> str:
        label = config_for(kind).label
        return f"{label}이(가) 북마크에 추가되었습니다." if result else f"{label} 북마크가 해제되었습니다."


class DeleteBookmarks(Mutation[int]):
    """Remove several bookmarks of one kind (bookmark management page)."""

    name = "delete_bookmarks"
    failure_message = "북마크 삭제에 실패했습니다."

    def affected_keys(
        self, identity: Identity | None, *, kind: str, item_ids: Sequence[Hashable]
    ) -> list[KeyTarget]:
        return [bookmark_keys["status"](kind, i) for i in item_ids]

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        kind: str,
        item_ids: Sequence[Hashable],
    ) -> Any:
        return SKIP if current is None else BookmarkStatus(is_bookmarked=False)

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        kind: str,
        item_ids: Sequence[Hashable],
    ) -> int:
        identity = signed_in(identity)
        return await delete_many(backend, identity.id, kind, item_ids)

    def invalidates(
        self, identity: Identity | None, *, kind: str, item_ids: Sequence[Hashable]
    ) -> list[KeyTarget]:
        return [bookmark_keys["lists"](kind), under(BATCH_ROOT)]

    def success_message(self, result: int, *, kind: str, item_ids: Sequence[Hashable]) -> str:
        return f"{result}개의 북마크가 삭제되었습니다."


__all__ = [
    "BATCH_ROOT",
    "BOOKMARK_CONFIGS",
    "BookmarkStatus",
    "DeleteBookmarks",
    "ToggleBookmark",
    "batch_status_key",
    "bookmark_keys",
    "bookmark_list",
    "bookmark_status",
    "bookmark_statuses",
    "delete_many",
    "fetch_batch_status",
    "fetch_list",
    "fetch_status",
    "toggle",
]
