"""Shared pytest fixtures."""

from collections.abc import Callable
from typing import Any

import pytest

from optiq import (
    CacheStore,
    Identity,
    MemoryBackend,
    Notice,
    QueryClient,
    StaticSession,
    TransportFailure,
    create_client,
)


@pytest.fixture
def backend() -> MemoryBackend:
    """Create a fresh MemoryBackend for each test."""
    return MemoryBackend()


@pytest.fixture
def session() -> StaticSession:
    """A session signed in as u1."""
    return StaticSession(Identity("u1", email="u1@example.com", name="User One"))


@pytest.fixture
def notices() -> list[Notice]:
    return []


@pytest.fixture
def client(backend: MemoryBackend, session: StaticSession, notices: list[Notice]) -> QueryClient:
    """QueryClient over the memory backend, collecting user-facing notices."""
    return create_client(backend=backend, session=session, notify=notices.append)


@pytest.fixture
def store(client: QueryClient) -> CacheStore:
    return client.store


@pytest.fixture
def fail(monkeypatch: pytest.MonkeyPatch, backend: MemoryBackend) -> Callable[..., None]:
    """Make one backend operation raise (TransportFailure by default)."""

    def install(op: str, error: BaseException | None = None) -> None:
        async def raiser(*args: Any, **kwargs: Any) -> Any:
            raise error if error is not None else TransportFailure()

        monkeypatch.setattr(backend, op, raiser)

    return install
