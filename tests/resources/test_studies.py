"""Tests for study details and membership mutations."""

import asyncio
from typing import Any

import pytest

from optiq import (
    AuthorizationDenied,
    Conflict,
    Identity,
    MemoryBackend,
    QueryClient,
    StaticSession,
    create_client,
)
from optiq.resources import studies
from optiq.resources.studies import StudyDetails, UpdateParticipantStatus, classify, study_keys


@pytest.fixture
def seeded(backend: MemoryBackend) -> MemoryBackend:
    backend.seed(
        "studies",
        [{"id": "s1", "owner_id": "u1", "title": "책 읽기", "status": "recruiting",
          "current_participants": 3, "book_id": 77}],
    )
    backend.seed("books", [{"id": 77, "title": "파이썬 책", "author": "K", "cover_url": None}])
    backend.seed(
        "study_participants",
        [
            {"id": "owner", "study_id": "s1", "user_id": "u1", "role": "owner", "status": None,
             "joined_at": "2024-01-01"},
            {"id": "p1", "study_id": "s1", "user_id": "u2", "role": "participant",
             "status": "pending", "joined_at": "2024-01-02"},
            {"id": "p2", "study_id": "s1", "user_id": "u3", "role": "participant",
             "status": "pending", "joined_at": "2024-01-03"},
        ],
    )
    backend.seed("profiles", [{"id": "u2", "nickname": "둘"}])

    async def kick(b: MemoryBackend, params: dict[str, Any]) -> bool:
        return params["p_owner_id"] == "u1"

    async def delete(b: MemoryBackend, params: dict[str, Any]) -> bool:
        if params["p_owner_id"] != "u1":
            return False
        await b.delete("studies", filters=[])
        return True

    backend.register_rpc("kick_study_participant", kick)
    backend.register_rpc("delete_study", delete)
    return backend


def ids(rows: tuple) -> list:
    return [p["id"] for p in rows]


class TestClassify:
    def test_status_less_owner_is_approved(self) -> None:
        pending, approved = classify(
            [
                {"id": "o", "role": "owner"},
                {"id": "a", "status": "approved"},
                {"id": "p", "status": "pending"},
                {"id": "r", "status": "rejected"},
            ]
        )
        assert ids(pending) == ["p"]
        assert ids(approved) == ["o", "a"]


class TestFetchDetails:
    async def test_details(self, client: QueryClient, seeded: MemoryBackend) -> None:
        details = await studies.study_details(client, "s1")
        assert isinstance(details, StudyDetails)
        assert details.is_owner
        assert details.user_participation_status == "approved"
        assert details.book is not None and details.book["title"] == "파이썬 책"
        assert ids(details.pending_participants) == ["p1", "p2"]
        assert ids(details.approved_participants) == ["owner"]
        assert details.participants[1]["user_name"] == "둘"

    async def test_missing_study(self, client: QueryClient, seeded: MemoryBackend) -> None:
        from optiq import NotFound

        with pytest.raises(NotFound, match="스터디를 찾을 수 없습니다"):
            await studies.study_details(client, "nope")


class TestUpdateParticipantStatus:
    """Approving one participant leaves the others' classification alone."""

    async def test_approve_one(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await studies.study_details(client, "s1")

        result = await client.mutate(
            UpdateParticipantStatus(), study_id="s1", participant_id="p1", status="approved"
        )

        assert result.ok
        assert result.message == "참여자를 승인했습니다."
        details = client.get_query_data(study_keys["detail"]("s1"))
        assert ids(details.approved_participants) == ["owner", "p1"]
        assert ids(details.pending_participants) == ["p2"]
        p2 = next(p for p in details.participants if p["id"] == "p2")
        assert p2["status"] == "pending"
        assert details.study["approved_participants"] == 2

    async def test_concurrent_approvals(
        self, client: QueryClient, seeded: MemoryBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await studies.study_details(client, "s1")
        release = asyncio.Event()
        waiting = 0
        update = seeded.update

        async def gated_update(*args: Any, **kwargs: Any) -> Any:
            nonlocal waiting
            waiting += 1
            await release.wait()
            return await update(*args, **kwargs)

        monkeypatch.setattr(seeded, "update", gated_update)
        approvals = asyncio.gather(
            *(
                client.mutate(
                    UpdateParticipantStatus(), study_id="s1", participant_id=pid, status="approved"
                )
                for pid in ("p1", "p2")
            )
        )
        while waiting < 2:
            await asyncio.sleep(0)
        in_flight = client.get_query_data(study_keys["detail"]("s1"))
        assert ids(in_flight.approved_participants) == ["owner", "p1", "p2"]

        release.set()
        results = await approvals

        assert all(r.ok for r in results)
        details = client.get_query_data(study_keys["detail"]("s1"))
        assert ids(details.approved_participants) == ["owner", "p1", "p2"]
        assert details.pending_participants == ()
        assert {p["id"]: p["status"] for p in seeded.rows("study_participants")} == {
            "owner": None,
            "p1": "approved",
            "p2": "approved",
        }

    async def test_non_owner_refused_from_cache(self, backend: MemoryBackend, seeded: MemoryBackend) -> None:
        client = create_client(backend=backend, session=StaticSession(Identity("u2")))
        await studies.study_details(client, "s1")
        before = client.get_query_data(study_keys["detail"]("s1"))

        result = await client.mutate(
            UpdateParticipantStatus(), study_id="s1", participant_id="p2", status="approved"
        )

        assert isinstance(result.error, AuthorizationDenied)
        assert client.get_query_data(study_keys["detail"]("s1")) is before

    async def test_non_owner_refused_by_server(self, seeded: MemoryBackend) -> None:
        with pytest.raises(AuthorizationDenied):
            await studies.update_participant_status(seeded, "u2", "s1", "p2", "approved")


class TestJoinStudy:
    async def test_join_then_duplicate(self, backend: MemoryBackend, seeded: MemoryBackend) -> None:
        client = create_client(backend=backend, session=StaticSession(Identity("u9", name="구")))
        await studies.study_details(client, "s1")

        await client.execute(studies.JoinStudy(), study_id="s1")

        details = client.get_query_data(study_keys["detail"]("s1"))
        assert details.user_participation_status == "pending"
        assert details.study["current_participants"] == 4
        mine = next(p for p in details.participants if p["user_id"] == "u9")
        assert mine["id"] != "temp_u9"
        assert mine["user_name"] == "구"

        with pytest.raises(Conflict, match="이미 참여 신청한 스터디입니다"):
            await client.execute(studies.JoinStudy(), study_id="s1")
        restored = client.get_query_data(study_keys["detail"]("s1"))
        assert restored.study["current_participants"] == 4


class TestKickAndDelete:
    async def test_kick(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await studies.study_details(client, "s1")
        result = await client.mutate(studies.KickParticipant(), study_id="s1", participant_id="u3")
        assert result.message == "강퇴했습니다."
        details = client.get_query_data(study_keys["detail"]("s1"))
        assert "p2" not in ids(details.participants)
        assert details.study["current_participants"] == 2

    async def test_kick_denied_by_rpc(self, seeded: MemoryBackend) -> None:
        with pytest.raises(AuthorizationDenied, match="강퇴 권한이 없습니다"):
            await studies.kick_participant(seeded, "u2", "s1", "u3")

    async def test_owner_leaving_dissolves(self, client: QueryClient, seeded: MemoryBackend) -> None:
        await studies.study_details(client, "s1")
        result = await client.mutate(studies.LeaveStudy(), study_id="s1", is_owner=True)
        assert result.value == "dissolve"
        assert result.message == "스터디를 해체했습니다."
        assert study_keys["detail"]("s1") not in client.store
        assert seeded.rows("studies") == []

    async def test_participant_leaving(self, backend: MemoryBackend, seeded: MemoryBackend) -> None:
        client = create_client(backend=backend, session=StaticSession(Identity("u3")))
        assert await client.execute(studies.LeaveStudy(), study_id="s1") == "leave"
        assert all(p["user_id"] != "u3" for p in seeded.rows("study_participants"))

    async def test_my_studies(self, backend: MemoryBackend, seeded: MemoryBackend) -> None:
        client = create_client(backend=backend, session=StaticSession(Identity("u2")))
        rows = await studies.my_studies(client)
        assert rows[0]["participant_status"] == "pending"
        assert rows[0]["book_title"] == "파이썬 책"
