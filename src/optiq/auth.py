"""Authentication boundary: who is the current user, if anyone."""

from typing import Protocol, runtime_checkable

from optiq.errors import AuthenticationRequired
from optiq.types import Identity


@runtime_checkable
class SessionProvider(Protocol):
    """Answers "is there a current authenticated identity?"."""

    def current_identity(self) -> Identity | None:
        """Return the signed-in identity or None."""
        ...


class StaticSession:
    """Session whose identity is set explicitly (sign in / sign out)."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity

    def current_identity(self) -> Identity | None:
        return self._identity

    def sign_in(self, identity: Identity) -> None:
        self._identity = identity

    def sign_out(self) -> None:
        self._identity = None


def signed_in(identity: Identity | None) -> Identity:
    """Return ``identity`` or raise AuthenticationRequired when it is None."""
    if identity is None:
        raise AuthenticationRequired()
    return identity


def require_identity(session: SessionProvider) -> Identity:
    """Return the current identity or raise AuthenticationRequired."""
    return signed_in(session.current_identity())
