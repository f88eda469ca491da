"""Study groups: details with participant classification and membership changes."""

from __future__ import annotations

import dataclasses
from collections.abc import Hashable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from optiq.auth import signed_in
from optiq.backends.base import Order, RemoteBackend, Row, eq, in_, select_one
from optiq.client import QueryClient
from optiq.errors import AuthorizationDenied, Conflict, NotFound
from optiq.keys import KeyTarget, define_keys
from optiq.mutation import KEEP, SKIP, Mutation
from optiq.resources.common import iso_now, user_id
from optiq.store import CacheStore
from optiq.types import CacheKey, Identity

ParticipationStatus = Literal["not_joined", "pending", "approved", "rejected"]
StudyStatus = Literal["recruiting", "in_progress", "completed"]

STUDY_STATUS_LABELS = {"recruiting": "모집중", "in_progress": "진행중", "completed": "완료"}

study_keys = define_keys(
    {
        "all": lambda: ("studies",),
        "lists": lambda: ("studies", "list"),
        "list": lambda filters: ("studies", "list", filters),
        "details": lambda: ("studies", "detail"),
        "detail": lambda study_id: ("studies", "detail", study_id),
        "mine": lambda user: ("my-studies", user),
    }
)


@dataclass(frozen=True, slots=True)
class StudyDetails:
    study: Row
    book: Row | None
    participants: tuple[Row, ...]
    pending_participants: tuple[Row, ...]
    approved_participants: tuple[Row, ...]
    user_participation_status: ParticipationStatus
    is_owner: bool

    def with_participants(self, participants: Iterable[Row], **study_changes: Any) -> StudyDetails:
        """Re-derive the classification from a new participant list."""
        participants = tuple(participants)
        pending, approved = classify(participants)
        return dataclasses.replace(
            self,
            study={**self.study, **study_changes},
            participants=participants,
            pending_participants=pending,
            approved_participants=approved,
        )


def classify(participants: Iterable[Row]) -> tuple[tuple[Row, ...], tuple[Row, ...]]:
    """Split participants into (pending, approved); a status-less owner counts as approved."""
    pending: list[Row] = []
    approved: list[Row] = []
    for p in participants:
        status = p.get("status")
        if status == "pending":
            pending.append(p)
        elif status == "approved" or (not status and p.get("role") == "owner"):
            approved.append(p)
    return tuple(pending), tuple(approved)


def participation_status(participants: Iterable[Row], user: str | None) -> ParticipationStatus:
    if user is None:
        return "not_joined"
    mine = next((p for p in participants if p.get("user_id") == user), None)
    if mine is None:
        return "not_joined"
    if mine.get("role") == "owner":
        return "approved"
    return mine.get("status") or "approved"


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


async def fetch_details(backend: RemoteBackend, study_id: Hashable, user: str | None) -> StudyDetails:
    study = await select_one(backend, "studies", filters=[eq("id", study_id)])
    if study is None:
        raise NotFound("스터디를 찾을 수 없습니다.")

    book = None
    if study.get("book_id"):
        book = await select_one(
            backend, "books", filters=[eq("id", study["book_id"])], columns="id,title,author,cover_url"
        )

    rows = await backend.select(
        "study_participants", filters=[eq("study_id", study_id)], order=Order("joined_at")
    )
    participants: list[Row] = []
    if rows:
        profiles = await backend.select(
            "profiles",
            filters=[in_("id", list(dict.fromkeys(r["user_id"] for r in rows)))],
            columns="id,name,nickname,avatar_url",
        )
        by_id = {p["id"]: p for p in profiles}
        for row in rows:
            profile = by_id.get(row["user_id"], {})
            participants.append(
                {
                    **row,
                    "user_name": profile.get("nickname")
                    or profile.get("name")
                    or row.get("user_name")
                    or "사용자",
                    "avatar_url": profile.get("avatar_url"),
                }
            )

    pending, approved = classify(participants)
    return StudyDetails(
        study=study,
        book=book,
        participants=tuple(participants),
        pending_participants=pending,
        approved_participants=approved,
        user_participation_status=participation_status(participants, user),
        is_owner=user is not None and user == study.get("owner_id"),
    )


async def fetch_my_studies(backend: RemoteBackend, user: str) -> list[Row]:
    """Studies the user takes part in, with their role and status attached."""
    memberships = await backend.select(
        "study_participants",
        filters=[eq("user_id", user)],
        columns="study_id,role,status,last_active_at",
    )
    if not memberships:
        return []
    by_study = {m["study_id"]: m for m in memberships}
    studies = await backend.select("studies", filters=[in_("id", list(by_study))])
    book_ids = [s["book_id"] for s in studies if s.get("book_id")]
    books = (
        await backend.select("books", filters=[in_("id", book_ids)], columns="id,title")
        if book_ids
        else []
    )
    titles = {b["id"]: b.get("title") for b in books}
    return [
        {
            **s,
            "participant": by_study[s["id"]].get("role"),
            "participant_status": by_study[s["id"]].get("status"),
            "last_active_at": by_study[s["id"]].get("last_active_at"),
            "book_title": titles.get(s.get("book_id")),
        }
        for s in studies
    ]


async def _require_owner(backend: RemoteBackend, user: str, study_id: Hashable) -> Row:
    study = await select_one(backend, "studies", filters=[eq("id", study_id)], columns="id,owner_id")
    if study is None:
        raise NotFound("스터디를 찾을 수 없습니다.")
    if study.get("owner_id") != user:
        raise AuthorizationDenied("스터디 방장만 할 수 있습니다.")
    return study


async def join_study(
    backend: RemoteBackend, user: str, study_id: Hashable, user_name: str
) -> Row:
    existing = await select_one(
        backend,
        "study_participants",
        filters=[eq("study_id", study_id), eq("user_id", user)],
        columns="id",
    )
    if existing is not None:
        raise Conflict("이미 참여 신청한 스터디입니다.")
    now = iso_now()
    (row,) = await backend.insert(
        "study_participants",
        {
            "study_id": study_id,
            "user_id": user,
            "user_name": user_name,
            "role": "participant",
            "status": "pending",
            "joined_at": now,
            "last_active_at": now,
        },
    )
    return row


async def update_participant_status(
    backend: RemoteBackend, user: str, study_id: Hashable, participant_id: Hashable, status: str
) -> Row:
    """Approve or reject a participant; only the study owner may."""
    await _require_owner(backend, user, study_id)
    updated = await backend.update(
        "study_participants",
        {"status": status, "last_active_at": iso_now()},
        filters=[eq("id", participant_id), eq("study_id", study_id)],
    )
    if not updated:
        raise NotFound("참여자를 찾을 수 없습니다.")
    return updated[0]


async def update_study_status(
    backend: RemoteBackend, user: str, study_id: Hashable, status: str
) -> Row:
    await _require_owner(backend, user, study_id)
    (row,) = await backend.update(
        "studies", {"status": status, "updated_at": iso_now()}, filters=[eq("id", study_id)]
    )
    return row


async def kick_participant(
    backend: RemoteBackend, user: str, study_id: Hashable, participant_user_id: str
) -> None:
    allowed = await backend.rpc(
        "kick_study_participant",
        {"p_study_id": study_id, "p_owner_id": user, "p_participant_id": participant_user_id},
    )
    if not allowed:
        raise AuthorizationDenied("강퇴 권한이 없습니다.")


async def delete_study(backend: RemoteBackend, user: str, study_id: Hashable) -> None:
    allowed = await backend.rpc("delete_study", {"p_study_id": study_id, "p_owner_id": user})
    if not allowed:
        raise AuthorizationDenied("삭제 권한이 없습니다.")


async def leave_study(
    backend: RemoteBackend, user: str, study_id: Hashable, *, is_owner: bool
) -> Literal["dissolve", "leave"]:
    """An owner leaving dissolves the study; anyone else drops their membership."""
    if is_owner:
        await delete_study(backend, user, study_id)
        return "dissolve"
    await backend.delete(
        "study_participants", filters=[eq("study_id", study_id), eq("user_id", user)]
    )
    return "leave"


# -----------------------------------------------------------------------------
# Cached reads
# -----------------------------------------------------------------------------


async def study_details(client: QueryClient, study_id: Hashable) -> StudyDetails:
    user = user_id(client.identity())
    return await client.query(
        study_keys["detail"](study_id),
        lambda: fetch_details(client.backend, study_id, user),
        stale_time="30s",
        retry=2,
    )


async def my_studies(client: QueryClient) -> list[Row]:
    user = user_id(client.identity())
    if user is None:
        return []
    return await client.query(
        study_keys["mine"](user),
        lambda: fetch_my_studies(client.backend, user),
        stale_time="150s",
    )


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class _StudyDetailMutation(Mutation[Any]):
    """Optimistically rewrites the cached StudyDetails of ``study_id``."""

    owner_only = False

    def authorize(
        self, store: CacheStore, identity: Identity | None, *, study_id: Hashable, **_: Any
    ) -> None:
        if not self.owner_only:
            return
        details = store.get_value(study_keys["detail"](study_id))
        if details is not None and not details.is_owner:
            raise AuthorizationDenied("스터디 방장만 할 수 있습니다.")

    def affected_keys(
        self, identity: Identity | None, *, study_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [study_keys["detail"](study_id)]

    def on_success_invalidates(
        self, identity: Identity | None, result: Any, *, study_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [study_keys["detail"](study_id)]


class JoinStudy(_StudyDetailMutation):
    name = "join_study"
    failure_message = "스터디 참여 신청에 실패했습니다."

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        study_id: Hashable,
        user_name: str | None = None,
    ) -> Any:
        if current is None:
            return SKIP
        identity = signed_in(identity)
        now = iso_now()
        temp = {
            "id": f"temp_{identity.id}",
            "study_id": study_id,
            "user_id": identity.id,
            "user_name": user_name or identity.name or identity.email or "사용자",
            "role": "participant",
            "status": "pending",
            "joined_at": now,
            "last_active_at": now,
            "avatar_url": None,
        }
        details = current.with_participants(
            [*current.participants, temp],
            current_participants=current.study.get("current_participants", 0) + 1,
        )
        return dataclasses.replace(details, user_participation_status="pending")

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        study_id: Hashable,
        user_name: str | None = None,
    ) -> Row:
        identity = signed_in(identity)
        name = user_name or identity.name or identity.email or "사용자"
        return await join_study(backend, identity.id, study_id, name)

    def reconcile(
        self, key: CacheKey, current: Any, result: Row, identity: Identity | None, **_: Any
    ) -> Any:
        if current is None:
            return KEEP
        temp_id = f"temp_{result['user_id']}"
        return current.with_participants(
            {**p, **result} if p.get("id") == temp_id else p for p in current.participants
        )

    def on_success_invalidates(
        self, identity: Identity | None, result: Row, *, study_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [
            study_keys["detail"](study_id),
            study_keys["lists"](),
            study_keys["mine"](identity.id),
        ]

    def success_message(self, result: Row, **_: Any) -> str:
        return "스터디 참여 신청이 완료되었습니다. 승인을 기다려주세요."


class UpdateParticipantStatus(_StudyDetailMutation):
    """Approve or reject one participant; other participants keep their state."""

    name = "update_participant_status"
    failure_message = "참여자 상태 변경에 실패했습니다."
    owner_only = True

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        study_id: Hashable,
        participant_id: Hashable,
        status: str,
    ) -> Any:
        if current is None:
            return SKIP
        participants = [
            {**p, "status": status} if p.get("id") == participant_id else p
            for p in current.participants
        ]
        _, approved = classify(participants)
        return current.with_participants(participants, approved_participants=len(approved))

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        study_id: Hashable,
        participant_id: Hashable,
        status: str,
    ) -> Row:
        identity = signed_in(identity)
        return await update_participant_status(
            backend, identity.id, study_id, participant_id, status
        )

    def success_message(self, result: Row, *, status: str, **_: Any) -> str:
        return "참여자를 승인했습니다." if status == "approved" else "참여자를 거부했습니다."


class UpdateStudyStatus(_StudyDetailMutation):
    name = "update_study_status"
    failure_message = "스터디 상태 변경에 실패했습니다."
    owner_only = True

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        study_id: Hashable,
        status: str,
    ) -> Any:
        if current is None:
            return SKIP
        return dataclasses.replace(current, study={**current.study, "status": status})

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, study_id: Hashable, status: str
    ) -> Row:
        identity = signed_in(identity)
        return await update_study_status(backend, identity.id, study_id, status)

    def on_success_invalidates(
        self, identity: Identity | None, result: Row, *, study_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [study_keys["detail"](study_id), study_keys["lists"]()]

    def success_message(self, result: Row, *, status: str, **_: Any) -> str:
        return f"스터디 상태가 {STUDY_STATUS_LABELS.get(status, status)}로 변경되었습니다."


class KickParticipant(_StudyDetailMutation):
    """Remove a participant, identified by their user id, through the owner RPC."""

    name = "kick_participant"
    failure_message = "강퇴 처리에 실패했습니다."
    owner_only = True

    def optimistic(
        self,
        key: CacheKey,
        current: Any,
        before: Any,
        identity: Identity | None,
        *,
        study_id: Hashable,
        participant_id: str,
    ) -> Any:
        if current is None:
            return SKIP
        remaining = [p for p in current.participants if p.get("user_id") != participant_id]
        _, approved = classify(remaining)
        return current.with_participants(
            remaining,
            current_participants=max(0, current.study.get("current_participants", 0) - 1),
            approved_participants=len(approved),
        )

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        study_id: Hashable,
        participant_id: str,
    ) -> None:
        identity = signed_in(identity)
        await kick_participant(backend, identity.id, study_id, participant_id)

    def success_message(self, result: None, **_: Any) -> str:
        return "강퇴했습니다."


class LeaveStudy(Mutation[str]):
    name = "leave_study"
    failure_message = "스터디 나가기에 실패했습니다."

    async def perform(
        self,
        backend: RemoteBackend,
        identity: Identity | None,
        *,
        study_id: Hashable,
        is_owner: bool = False,
    ) -> str:
        identity = signed_in(identity)
        return await leave_study(backend, identity.id, study_id, is_owner=is_owner)

    def on_success_invalidates(
        self, identity: Identity | None, result: str, **_: Any
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [study_keys["all"](), study_keys["mine"](identity.id)]

    def on_success_removes(
        self, identity: Identity | None, result: str, *, study_id: Hashable, **_: Any
    ) -> list[KeyTarget]:
        return [study_keys["detail"](study_id)] if result == "dissolve" else []

    def success_message(self, result: str, **_: Any) -> str:
        return "스터디를 해체했습니다." if result == "dissolve" else "스터디를 나갔습니다."


class DeleteStudy(Mutation[None]):
    name = "delete_study"
    failure_message = "스터디 삭제 중 오류가 발생했습니다."

    async def perform(
        self, backend: RemoteBackend, identity: Identity | None, *, study_id: Hashable
    ) -> None:
        identity = signed_in(identity)
        await delete_study(backend, identity.id, study_id)

    def on_success_invalidates(
        self, identity: Identity | None, result: None, **_: Any
    ) -> list[KeyTarget]:
        identity = signed_in(identity)
        return [study_keys["all"](), study_keys["mine"](identity.id)]

    def on_success_removes(
        self, identity: Identity | None, result: None, *, study_id: Hashable
    ) -> list[KeyTarget]:
        return [study_keys["detail"](study_id)]

    def success_message(self, result: None, **_: Any) -> str:
        return "스터디가 성공적으로 삭제되었습니다."


__all__ = [
    "DeleteStudy",
    "JoinStudy",
    "KickParticipant",
    "LeaveStudy",
    "StudyDetails",
    "UpdateParticipantStatus",
    "UpdateStudyStatus",
    "classify",
    "delete_study",
    "fetch_details",
    "fetch_my_studies",
    "join_study",
    "kick_participant",
    "leave_study",
    "my_studies",
    "participation_status",
    "study_details",
    "study_keys",
    "update_participant_status",
    "update_study_status",
]
