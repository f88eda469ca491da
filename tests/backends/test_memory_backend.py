"""Tests for the in-memory backend."""

import pytest

from optiq import Conflict, MemoryBackend, NotFound
from optiq.backends import Order, any_of, eq, ilike, in_, lt, neq, select_one


@pytest.fixture
def lectures(backend: MemoryBackend) -> MemoryBackend:
    backend.seed(
        "lectures",
        [
            {"id": 101, "title": "Python 입문", "depth": "입문", "created_at": "2024-01-01"},
            {"id": 102, "title": "고급 파이썬", "depth": "고급", "created_at": "2024-03-01"},
            {"id": 103, "title": "React", "depth": "입문", "created_at": "2024-02-01"},
        ],
    )
    return backend


class TestSelect:
    """Filtering, ordering and paging."""

    async def test_filters(self, lectures: MemoryBackend) -> None:
        rows = await lectures.select("lectures", filters=[eq("depth", "입문")])
        assert [r["id"] for r in rows] == [101, 103]
        rows = await lectures.select("lectures", filters=[neq("depth", "입문")])
        assert [r["id"] for r in rows] == [102]
        rows = await lectures.select("lectures", filters=[in_("id", [101, 102])])
        assert [r["id"] for r in rows] == [101, 102]
        rows = await lectures.select("lectures", filters=[lt("created_at", "2024-02-15")])
        assert [r["id"] for r in rows] == [101, 103]

    async def test_ilike_and_any_of(self, lectures: MemoryBackend) -> None:
        rows = await lectures.select("lectures", filters=[ilike("title", "%python%")])
        assert [r["id"] for r in rows] == [101]
        rows = await lectures.select(
            "lectures", filters=[any_of(ilike("title", "%react%"), eq("depth", "고급"))]
        )
        assert [r["id"] for r in rows] == [102, 103]

    async def test_order_offset_limit(self, lectures: MemoryBackend) -> None:
        rows = await lectures.select(
            "lectures", order=Order("created_at", ascending=False), offset=1, limit=1
        )
        assert [r["id"] for r in rows] == [103]

    async def test_columns_projection(self, lectures: MemoryBackend) -> None:
        rows = await lectures.select("lectures", filters=[eq("id", 101)], columns="id, title")
        assert rows == [{"id": 101, "title": "Python 입문"}]

    async def test_select_one(self, lectures: MemoryBackend) -> None:
        assert (await select_one(lectures, "lectures", filters=[eq("id", 102)]))["depth"] == "고급"
        assert await select_one(lectures, "lectures", filters=[eq("id", 999)]) is None

    async def test_returned_rows_are_copies(self, lectures: MemoryBackend) -> None:
        (row,) = await lectures.select("lectures", filters=[eq("id", 101)])
        row["title"] = "changed"
        assert lectures.rows("lectures")[0]["title"] == "Python 입문"


class TestWrites:
    async def test_insert_assigns_defaults(self, backend: MemoryBackend) -> None:
        (row,) = await backend.insert("t", {"name": "a"})
        assert "id" in row
        assert "created_at" in row

    async def test_unique_constraint(self) -> None:
        backend = MemoryBackend(unique={"likes": [("post_id", "user_id")]})
        await backend.insert("likes", {"post_id": 1, "user_id": "u1"})
        with pytest.raises(Conflict) as exc_info:
            await backend.insert("likes", {"post_id": 1, "user_id": "u1"})
        assert exc_info.value.code == "23505"

    async def test_update_and_delete(self, lectures: MemoryBackend) -> None:
        updated = await lectures.update("lectures", {"depth": "중급"}, filters=[eq("id", 101)])
        assert updated[0]["depth"] == "중급"
        deleted = await lectures.delete("lectures", filters=[eq("depth", "입문")])
        assert [r["id"] for r in deleted] == [103]
        assert await lectures.count("lectures") == 2

    async def test_upsert_merges_on_conflict_columns(self, backend: MemoryBackend) -> None:
        await backend.upsert("p", {"u": 1, "l": 2, "v": "a"}, on_conflict=("u", "l"))
        await backend.upsert("p", {"u": 1, "l": 2, "v": "b"}, on_conflict=("u", "l"))
        rows = backend.rows("p")
        assert len(rows) == 1
        assert rows[0]["v"] == "b"


class TestRpc:
    async def test_registered_handler(self, backend: MemoryBackend) -> None:
        async def double(b: MemoryBackend, params: dict) -> int:
            return params["n"] * 2

        backend.register_rpc("double", double)
        assert await backend.rpc("double", {"n": 4}) == 8
        assert ("rpc", "double") in backend.calls

    async def test_unknown_function(self, backend: MemoryBackend) -> None:
        with pytest.raises(NotFound):
            await backend.rpc("missing", {})
