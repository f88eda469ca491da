"""Read-only lecture catalogue: lists, search, detail and sections."""

from __future__ import annotations

from dataclasses import dataclass

from optiq.backends.base import (
    Filter,
    Order,
    RemoteBackend,
    Row,
    any_of,
    eq,
    ilike,
    in_,
    neq,
    select_one,
)
from optiq.client import QueryClient
from optiq.errors import NotFound
from optiq.keys import define_keys

LIST_COLUMNS = (
    "id,title,instructor,category,keyword,depth,thumbnail_url,group_type,"
    "is_free,price,likes,students,created_at,updated_at"
)

lecture_keys = define_keys(
    {
        "all": lambda: ("lectures",),
        "lists": lambda: ("lectures", "list"),
        "list": lambda category: ("lectures", "list", category),
        "searches": lambda: ("lectures", "search"),
        "search": lambda query, filters: ("lectures", "search", query, filters),
        "details": lambda: ("lectures", "detail"),
        "detail": lambda lecture_id: ("lectures", "detail", lecture_id),
        "sections": lambda lecture_id: ("lectures", "sections", lecture_id),
    }
)


@dataclass(frozen=True, slots=True)
class SearchFilters:
    depth: tuple[str, ...] = ()
    fields: tuple[str, ...] = ()
    has_group: bool = False


@dataclass(frozen=True, slots=True)
class LectureSummary:
    id: int
    title: str
    instructor: str | None
    category: str | None
    keyword: str | None
    depth: str | None
    thumbnail_url: str = ""
    group_type: str = "online"
    is_free: bool = True
    price: int = 0
    likes: int = 0
    students: int = 0
    created_at: str | None = None

    @property
    def href(self) -> str:
        return f"/knowledge/lecture/{self.id}"


def summarize(row: Row) -> LectureSummary:
    """Map a lecture row, filling the catalogue defaults for missing values."""
    return LectureSummary(
        id=row["id"],
        title=row.get("title") or "",
        instructor=row.get("instructor"),
        category=row.get("category"),
        keyword=row.get("keyword"),
        depth=row.get("depth"),
        thumbnail_url=row.get("thumbnail_url") or "",
        group_type=row.get("group_type") or "online",
        is_free=True if row.get("is_free") is None else bool(row["is_free"]),
        price=row.get("price") or 0,
        likes=row.get("likes") or 0,
        students=row.get("students") or 0,
        created_at=row.get("created_at"),
    )


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_lectures(backend: RemoteBackend, category: str = "all") -> list[LectureSummary]:
    filters = [] if category == "all" else [eq("category", category)]
    rows = await backend.select(
        "lectures",
        filters=filters,
        columns=LIST_COLUMNS,
        order=Order("created_at", ascending=False),
    )
    return [summarize(r) for r in rows]


async def search_lectures(
    backend: RemoteBackend, query: str, filters: SearchFilters | None = None
) -> list[LectureSummary]:
    """Match title, instructor or keyword; narrow by depth, field and group."""
    filters = filters or SearchFilters()
    conditions: list[Filter] = []
    if query:
        pattern = f"%{query}%"
        conditions.append(
            any_of(
                ilike("title", pattern), ilike("instructor", pattern), ilike("keyword", pattern)
            )
        )
    if filters.depth:
        conditions.append(in_("depth", filters.depth))
    if filters.fields:
        conditions.append(in_("category", filters.fields))
    if filters.has_group:
        conditions.append(neq("group_type", "online"))
    rows = await backend.select(
        "lectures",
        filters=conditions,
        columns=LIST_COLUMNS,
        order=Order("created_at", ascending=False),
    )
    return [summarize(r) for r in rows]


async def fetch_lecture(backend: RemoteBackend, lecture_id: int) -> Row:
    row = await select_one(backend, "lectures", filters=[eq("id", lecture_id)])
    if row is None:
        raise NotFound("강의를 찾을 수 없습니다.")
    return row


async def fetch_sections(backend: RemoteBackend, lecture_id: int) -> list[Row]:
    return await backend.select(
        "lecture_sections", filters=[eq("lecture_id", lecture_id)], order=Order("order_index")
    )


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def lecture_list(client: QueryClient, category: str = "all") -> list[LectureSummary]:
    return await client.query(
        lecture_keys["list"](category),
        lambda: fetch_lectures(client.backend, category),
        stale_time="5m",
    )


async def lecture_search(
    client: QueryClient, query: str, filters: SearchFilters | None = None
) -> list[LectureSummary]:
    if not query:
        return []
    return await client.query(
        lecture_keys["search"](query, filters or SearchFilters()),
        lambda: search_lectures(client.backend, query, filters),
        stale_time="3m",
    )


async def lecture_detail(client: QueryClient, lecture_id: int) -> Row:
    return await client.query(
        lecture_keys["detail"](lecture_id),
        lambda: fetch_lecture(client.backend, lecture_id),
        stale_time="10m",
    )


async def lecture_sections(client: QueryClient, lecture_id: int) -> list[Row]:
    return await client.query(
        lecture_keys["sections"](lecture_id),
        lambda: fetch_sections(client.backend, lecture_id),
        stale_time="15m",
    )


__all__ = [
    "LectureSummary",
    "SearchFilters",
    "fetch_lecture",
    "fetch_lectures",
    "fetch_sections",
    "lecture_detail",
    "lecture_keys",
    "lecture_list",
    "lecture_search",
    "lecture_sections",
    "search_lectures",
    "summarize",
]
