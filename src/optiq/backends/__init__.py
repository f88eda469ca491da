"""Remote data service backends (async only)."""

from optiq.backends.base import (
    Filter,
    Order,
    RemoteBackend,
    Row,
    any_of,
    eq,
    ilike,
    in_,
    lt,
    neq,
    select_one,
)
from optiq.backends.memory import MemoryBackend

# RestBackend imports httpx on construction, so importing it is always safe
from optiq.backends.rest import RestBackend

__all__ = [
    "Filter",
    "MemoryBackend",
    "Order",
    "RemoteBackend",
    "RestBackend",
    "Row",
    "any_of",
    "eq",
    "ilike",
    "in_",
    "lt",
    "neq",
    "select_one",
]
