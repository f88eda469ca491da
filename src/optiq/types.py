"""Core types for the optiq cache library."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    Hashable,
    NewType,
    TypeVar,
)

T = TypeVar("T")

# Branded key type - compile-time enforcement only
if TYPE_CHECKING:
    CacheKey = NewType("CacheKey", tuple[Hashable, ...])
else:
    CacheKey = tuple


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with freshness metadata."""

    value: T
    updated_at: int  # Unix timestamp ms
    stale_time: int  # ms the value counts as fresh
    invalidated: bool = False


@dataclass(frozen=True, slots=True)
class Snapshot:
    """The entry a key held before a mutation touched it (None if absent)."""

    key: CacheKey
    entry: CacheEntry[Any] | None

    @property
    def value(self) -> Any | None:
        return None if self.entry is None else self.entry.value


@dataclass(slots=True)
class MutationContext:
    """Snapshots captured by one in-flight mutation, used for rollback."""

    name: str
    started_at: int
    snapshots: list[Snapshot] = field(default_factory=list)
    written: set[CacheKey] = field(default_factory=set)

    def written_snapshots(self) -> list[Snapshot]:
        return [s for s in self.snapshots if s.key in self.written]


@dataclass(frozen=True, slots=True)
class Identity:
    """The authenticated user a mutation runs as."""

    id: str
    email: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class Notice:
    """A short user-facing message (the toast)."""

    level: str  # "success" | "error"
    message: str


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Outcome of a mutation as seen by the UI layer."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
    """What a UI reads for one key: last known value plus flags."""

    data: T | None
    is_loading: bool
    is_stale: bool
    updated_at: int | None = None


# Duration type alias
Duration = str | int | timedelta  # "30s", "5m", "2h", "1d", ms, or timedelta
