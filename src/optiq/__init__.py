"""optiq - Optimistic mutations and cache reconciliation for Python."""

# Authentication boundary
from optiq.auth import SessionProvider, StaticSession, require_identity, signed_in

# Backends (async only)
from optiq.backends import MemoryBackend, RemoteBackend, RestBackend

# QueryClient API
from optiq.client import QueryClient, create_client

# Duration parsing
from optiq.duration import parse_duration

# Errors
from optiq.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    Conflict,
    NotFound,
    OptiqError,
    TransportFailure,
)

# Keys
from optiq.keys import batch_key, contains_member, define_keys, under

# Mutations
from optiq.mutation import KEEP, SKIP, Mutation

# Realtime
from optiq.realtime import ChangeEvent, ChangeFeed, RealtimeBridge, RowChange
from optiq.store import CacheStore

# Core types
from optiq.types import (
    CacheEntry,
    CacheKey,
    Duration,
    Identity,
    MutationResult,
    Notice,
    QueryState,
)

__version__ = "0.1.0"

__all__ = [
    "KEEP",
    "SKIP",
    "AuthenticationRequired",
    "AuthorizationDenied",
    "CacheEntry",
    "CacheKey",
    "CacheStore",
    "ChangeEvent",
    "ChangeFeed",
    "Conflict",
    "Duration",
    "Identity",
    "MemoryBackend",
    "Mutation",
    "MutationResult",
    "NotFound",
    "Notice",
    "OptiqError",
    "QueryClient",
    "QueryState",
    "RealtimeBridge",
    "RemoteBackend",
    "RestBackend",
    "RowChange",
    "SessionProvider",
    "StaticSession",
    "TransportFailure",
    "batch_key",
    "contains_member",
    "create_client",
    "define_keys",
    "parse_duration",
    "require_identity",
    "signed_in",
    "under",
]
