"""User notifications: list, unread count, read/delete state and push updates."""

from __future__ import annotations

from collections.abc import Hashable, Iterator
from datetime import timedelta
from typing import Any

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, lt
from optiq.client import QueryClient
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import SKIP, Mutation, best_effort
from optiq.realtime import ChangeEvent, Route, RowChange
from optiq.resources.common import iso_now, replace_in, user_id
from optiq.store import CacheStore
from optiq.types import CacheKey, Identity

DEFAULT_DELETE_DELAY_MINUTES = 20

notification_keys = define_keys(
    {
        "all": lambda: ("notifications",),
        "lists": lambda: ("notifications", "list"),
        "list": lambda user: ("notifications", "list", user),
        "unread_count": lambda user: ("notifications", "unreadCount", user),
    }
)


def _find(notifications: list[Row] | None, notification_id: Hashable) -> Row | None:
    return next((n for n in notifications or [] if n.get("id") == notification_id), None)


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def purge_expired(backend: RemoteBackend, user: str) -> int:
    """Delete notifications whose scheduled deletion time has passed."""
    deleted = await backend.delete(
        "notifications",
        filters=[eq("user_id", user), eq("pending_delete", True), lt("delete_at", iso_now())],
    )
    return len(deleted)


async def fetch_notifications(backend: RemoteBackend, user: str) -> list[Row]:
    """Newest first; expired pending deletions are purged beforehand."""
    await best_effort(purge_expired(backend, user), what="purge expired notifications")
    return await backend.select(
        "notifications", filters=[eq("user_id", user)], order=Order("created_at", ascending=False)
    )


async def fetch_unread_count(backend: RemoteBackend, user: str) -> int:
    return await backend.count("notifications", filters=[eq("user_id", user), eq("read", False)])


async def mark_read(backend: RemoteBackend, user: str, notification_id: Hashable) -> None:
    await backend.update(
        "notifications", {"read": True}, filters=[eq("id", notification_id), eq("user_id", user)]
    )


async def mark_all_read(backend: RemoteBackend, user: str) -> int:
    updated = await backend.update(
        "notifications", {"read": True}, filters=[eq("user_id", user), eq("read", False)]
    )
    return len(updated)


async def delete_notification(backend: RemoteBackend, user: str, notification_id: Hashable) -> None:
    await backend.delete("notifications", filters=[eq("id", notification_id), eq("user_id", user)])


async def schedule_deletion(
    backend: RemoteBackend, user: str, notification_id: Hashable, delete_at: str
) -> None:
    await backend.update(
        "notifications",
        {"pending_delete": True, "delete_at": delete_at},
        filters=[eq("id", notification_id), eq("user_id", user)],
    )


async def cancel_deletion(backend: RemoteBackend, user: str, notification_id: Hashable) -> None:
    await backend.update(
        "notifications",
        {"pending_delete": False, "delete_at": None},
        filters=[eq("id", notification_id), eq("user_id", user)],
    )


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def notifications(client: QueryClient) -> list[Row]:
    user = user_id(client.identity())
    if user is None:
        return []
    return await client.query(
        notification_keys["list"](user),
        lambda: fetch_notifications(client.backend, user),
        stale_time="30s",
    )


async def unread_count(client: QueryClient) -> int:
    user = user_id(client.identity())
    if user is None:
        return 0
    return await client.query(
        notification_keys["unread_count"](user),
        lambda: fetch_unread_count(client.backend, user),
        stale_time="30s",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class _NotificationMutation(Mutation[Any]):
    """List plus unread count of the signed-in user, invalidated on settle."""

    touches_unread = True

    def _keys(self, identity: Identity | None) -> list[KeyTarget]:
        identity = signed_in(identity)
        keys: list[KeyTarget] = [notification_keys["list"](identity.id)]
        if self.touches_unread:
            keys.append(notification_keys["unread_count"](identity.id))
        return keys

    def affected_keys(self, identity: Identity | None, **_: Any) -> list[KeyTarget]:
        return self._keys(identity)

    def invalidates(self, identity: Identity | None, **_: Any) -> list[KeyTarget]:
        return self._keys(identity)


class MarkNotificationRead(_NotificationMutation):
    name = "mark_notification_read"
    failure_message = "알림 읽음 처리에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        notification_id: Hashable,
    ) -> Any:
        if current is None:
            return SKIP
        if key[1] == "list":
            return replace_in(current, notification_id, read=True)
        identity = signed_in(identity)
        target = _find(before.get(notification_keys["list"](identity.id)), notification_id)
        if target is None or target.get("read"):
            return SKIP
        return max(0, current - 1)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, notification_id: Hashable
    ) -> None:
        identity = signed_in(identity)
        await mark_read(backend, identity.id, notification_id)


class MarkAllNotificationsRead(_NotificationMutation):
    name = "mark_all_notifications_read"
    failure_message = "알림 읽음 처리에 실패했습니다."

    def optimistic(
        self, key: CacheKey, current: Any, before: Any, identity: Identity | None
    ) -> Any:
        if key[1] == "list":
            return SKIP if current is None else [{**n, "read": True} for n in current]
        return 0

    async def perform(self, backend: RemoteBackend, identity: Identity | None) -> int:
        identity = signed_in(identity)
        return await mark_all_read(backend, identity.id)


class DeleteNotification(_NotificationMutation):
    name = "delete_notification"
    failure_message = "알림 삭제에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        notification_id: Hashable,
    ) -> Any:
        if current is None:
            return SKIP
        if key[1] == "list":
            return [n for n in current if n.get("id") != notification_id]
        identity = signed_in(identity)
        target = _find(before.get(notification_keys["list"](identity.id)), notification_id)
        if target is None or target.get("read"):
            return SKIP
        return max(0, current - 1)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, notification_id: Hashable
    ) -> None:
        identity = signed_in(identity)
        await delete_notification(backend, identity.id, notification_id)


class MarkNotificationForDeletion(_NotificationMutation):
    """Schedule a notification to be purged ``delay_minutes`` from now."""

    name = "mark_notification_for_deletion"
    failure_message = "알림 삭제 예약에 실패했습니다."
    touches_unread = False

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        notification_id: Hashable,
        delay_minutes: int = DEFAULT_DELETE_DELAY_MINUTES,
    ) -> Any:
        if current is None:
            return SKIP
        delete_at = iso_now(timedelta(minutes=delay_minutes))
        return replace_in(current, notification_id, pending_delete=True, delete_at=delete_at)

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        notification_id: Hashable,
        delay_minutes: int = DEFAULT_DELETE_DELAY_MINUTES,
    ) -> None:
        identity = signed_in(identity)
        delete_at = iso_now(timedelta(minutes=delay_minutes))
        await schedule_deletion(backend, identity.id, notification_id, delete_at)


class CancelNotificationDeletion(_NotificationMutation):
    name = "cancel_notification_deletion"
    failure_message = "알림 삭제 예약 취소에 실패했습니다."
    touches_unread = False

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        notification_id: Hashable,
    ) -> Any:
        if current is None:
            return SKIP
        return replace_in(current, notification_id, pending_delete=False, delete_at=None)

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, notification_id: Hashable
    ) -> None:
        identity = signed_in(identity)
        await cancel_deletion(backend, identity.id, notification_id)


# -----------------------------------------------------------------------------
# Realtime
# -----------------------------------------------------------------------------


def notification_changes(user: str) -> Route:
    """Route pushed ``notifications`` rows of ``user`` into the cache.

    INSERT prepends and bumps the unread count, UPDATE replaces the row and
    follows its read flag, DELETE removes it and decrements the count when it
    was unread. Keys that are not cached are left alone.
    """
    list_key = notification_keys["list"](user)
    count_key = notification_keys["unread_count"](user)

    def handle(change: RowChange, store: CacheStore) -> Iterator[ChangeEvent]:
        row = change.new if change.event != "DELETE" else change.old
        if not row or row.get("user_id", user) != user:
            return
        current: list[Row] | None = store.get_value(list_key)
        count: int | None = store.get_value(count_key)

        if change.event == "INSERT":
            if current is not None:
                yield ChangeEvent(list_key, [row, *current])
            if count is not None and not row.get("read"):
                yield ChangeEvent(count_key, count + 1)

        elif change.event == "UPDATE":
            if current is not None:
                yield ChangeEvent(
                    list_key, [row if n.get("id") == row.get("id") else n for n in current]
                )
            old = change.old or {}
            if count is not None and "read" in old and bool(old["read"]) != bool(row.get("read")):
                yield ChangeEvent(count_key, max(0, count - 1) if row.get("read") else count + 1)

        elif change.event == "DELETE":
            cached = _find(current, row.get("id"))
            was_read = row["read"] if "read" in row else (cached or {}).get("read", False)
            if current is not None:
                yield ChangeEvent(list_key, [n for n in current if n.get("id") != row.get("id")])
            if count is not None and not was_read:
                yield ChangeEvent(count_key, max(0, count - 1))

    return handle


__all__ = [
    "DEFAULT_DELETE_DELAY_MINUTES",
    "CancelNotificationDeletion",
    "DeleteNotification",
    "MarkAllNotificationsRead",
    "MarkNotificationForDeletion",
    "MarkNotificationRead",
    "cancel_deletion",
    "delete_notification",
    "fetch_notifications",
    "fetch_unread_count",
    "mark_all_read",
    "mark_read",
    "notification_changes",
    "notifications",
    "purge_expired",
    "schedule_deletion",
    "unread_count",
]
