"""Helpers shared by resource accessors."""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from optiq.backends.base import RemoteBackend, Row, eq, in_
from optiq.types import Identity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_now(offset: timedelta | None = None) -> str:
    moment = utcnow()
    if offset is not None:
        moment += offset
    return moment.isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def hours_since(value: str) -> float:
    return (utcnow() - parse_timestamp(value)).total_seconds() / 3600


def user_id(identity: Identity | None) -> str | None:
    return None if identity is None else identity.id


def replace_in(items: Sequence[Row], match_id: Hashable, **changes: Any) -> list[Row]:
    """Copy of ``items`` where the row with ``id == match_id`` is updated."""
    return [{**item, **changes} if item.get("id") == match_id else item for item in items]


async def attach(
    backend: RemoteBackend,
    rows: list[Row],
    *,
    table: str,
    foreign_key: str,
    as_name: str,
) -> list[Row]:
    """Attach the related row from ``table`` to each row (a client-side join)."""
    ids = list(dict.fromkeys(r[foreign_key] for r in rows if r.get(foreign_key) is not None))
    if not ids:
        return [{**r, as_name: None} for r in rows]
    related = await backend.select(table, filters=[in_("id", ids)])
    by_id = {r["id"]: r for r in related}
    return [{**r, as_name: by_id.get(r.get(foreign_key))} for r in rows]


def group_by(rows: Iterable[Row], column: str) -> dict[Any, list[Row]]:
    grouped: dict[Any, list[Row]] = {}
    for row in rows:
        grouped.setdefault(row.get(column), []).append(row)
    return grouped


@dataclass(frozen=True, slots=True)
class LikeStatus:
    is_liked: bool
    likes_count: int

    def flipped(self) -> LikeStatus:
        """The status after one toggle by the current user."""
        return LikeStatus(
            is_liked=not self.is_liked,
            likes_count=max(self.likes_count + (-1 if self.is_liked else 1), 0),
        )


async def toggle_relation(
    backend: RemoteBackend, table: str, foreign_key: str, item_id: Hashable, user: str
) -> bool:
    """Delete the user's row for ``item_id`` if present, insert it otherwise.

    Returns True when the relation now exists.
    """
    rows = await backend.select(
        table, filters=[eq(foreign_key, item_id), eq("user_id", user)], columns="id", limit=1
    )
    if rows:
        await backend.delete(table, filters=[eq("id", rows[0]["id"])])
        return False
    await backend.insert(table, {foreign_key: item_id, "user_id": user})
    return True


async def fetch_like_status(
    backend: RemoteBackend, table: str, foreign_key: str, item_id: Hashable, user: str | None
) -> LikeStatus:
    likes = await backend.count(table, filters=[eq(foreign_key, item_id)])
    if user is None:
        return LikeStatus(is_liked=False, likes_count=likes)
    mine = await backend.select(
        table, filters=[eq(foreign_key, item_id), eq("user_id", user)], columns="id", limit=1
    )
    return LikeStatus(is_liked=bool(mine), likes_count=likes)


async def fetch_like_statuses(
    backend: RemoteBackend,
    table: str,
    foreign_key: str,
    item_ids: Sequence[Hashable],
    user: str | None,
) -> dict[Hashable, LikeStatus]:
    """Like counts and the user's own likes for many items in two selects."""
    if not item_ids:
        return {}
    rows = await backend.select(
        table, filters=[in_(foreign_key, item_ids)], columns=f"{foreign_key},user_id"
    )
    counts = {i: 0 for i in item_ids}
    liked: set[Hashable] = set()
    for row in rows:
        counts[row[foreign_key]] = counts.get(row[foreign_key], 0) + 1
        if user is not None and row.get("user_id") == user:
            liked.add(row[foreign_key])
    return {i: LikeStatus(is_liked=i in liked, likes_count=counts[i]) for i in item_ids}
