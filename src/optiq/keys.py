"""Cache key definition and matching utilities."""

from collections.abc import Callable, Hashable, Iterable

from optiq.types import CacheKey

KeyPredicate = Callable[[CacheKey], bool]
KeyTarget = CacheKey | KeyPredicate

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}


def define_keys(
    definitions: dict[str, Callable[..., tuple[Hashable, ...]]],
) -> dict[str, Callable[..., CacheKey]]:
    """
    Define the cache keys of one entity in a centralized location.

    Example:
        keys = define_keys({
            "all": lambda: ("comments",),
            "list": lambda post_id: ("comments", "list", post_id),
        })

        keys["list"](7)  # CacheKey: ("comments", "list", 7)
    """
    result: dict[str, Callable[..., CacheKey]] = {}
    for name, fn in definitions.items():

        def make_key(
            *args: Hashable, _fn: Callable[..., tuple[Hashable, ...]] = fn
        ) -> CacheKey:
            return CacheKey(tuple(_fn(*args)))

        result[name] = make_key
    return result


def serialize_key(key: CacheKey) -> str:
    """Serialize a key tuple to a string for logs and error messages."""

    def escape(part: Hashable) -> str:
        if isinstance(part, tuple):
            return "[" + ",".join(escape(p) for p in part) + "]"
        result = str(part)
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(p) for p in key)


def is_key_prefix(parent: CacheKey, child: CacheKey) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent


def matches(target: KeyTarget, key: CacheKey, *, exact: bool = False) -> bool:
    """Check a key against a key (prefix or exact match) or a predicate."""
    if callable(target):
        return bool(target(key))
    if exact:
        return key == target
    return is_key_prefix(target, key)


def batch_member(kind: str, id: Hashable) -> str:
    """Name of one item inside a batch key, e.g. ``"lecture-42"``."""
    return f"{kind}-{id}"


def batch_key(root: str, members: Iterable[Hashable]) -> CacheKey:
    """Build a batch key whose member list is order independent."""
    return CacheKey((root, tuple(sorted(members, key=str))))


def contains_member(root: str, member: Hashable) -> KeyPredicate:
    """Predicate for batch keys under ``root`` that include ``member``."""

    def predicate(key: CacheKey) -> bool:
        return (
            len(key) >= 2
            and key[0] == root
            and isinstance(key[1], tuple)
            and member in key[1]
        )

    return predicate


def under(*prefix: Hashable) -> KeyPredicate:
    """Predicate for every key starting with ``prefix``.

    Unlike a plain key target, a predicate is expanded against the keys
    present in the store when a mutation resolves its affected keys.
    """
    return lambda key: key[: len(prefix)] == prefix
