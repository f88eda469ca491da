"""Error taxonomy shared by backends, accessors and the mutation runner.

Every error carries a short user-facing ``message``. Accessors raise these
unchanged; the mutation runner rolls the cache back and re-raises them so
the UI layer can render ``error.message``.
"""

from __future__ import annotations


class OptiqError(Exception):
    """Base class for all optiq errors."""

    default_message = "요청 처리에 실패했습니다."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)


class AuthenticationRequired(OptiqError):
    """No active identity; nothing was written to the cache."""

    default_message = "로그인이 필요합니다."


class AuthorizationDenied(OptiqError):
    """Identity present but not allowed to perform the action."""

    default_message = "권한이 없습니다."


class NotFound(OptiqError):
    """The target entity no longer exists server-side."""

    default_message = "대상을 찾을 수 없습니다."


class Conflict(OptiqError):
    """Duplicate unique value or entity already in the requested state."""

    default_message = "이미 처리된 요청입니다."


class TransportFailure(OptiqError):
    """Network or service unavailability."""

    default_message = "요청 처리에 실패했습니다. 잠시 후 다시 시도해주세요."


__all__ = [
    "AuthenticationRequired",
    "AuthorizationDenied",
    "Conflict",
    "NotFound",
    "OptiqError",
    "TransportFailure",
]
