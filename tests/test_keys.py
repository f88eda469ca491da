"""Tests for key definition and matching."""

from optiq import batch_key, contains_member, define_keys, under
from optiq.keys import batch_member, is_key_prefix, matches, serialize_key


class TestDefineKeys:
    """Tests for define_keys function."""

    def test_key_factories_build_tuples(self) -> None:
        keys = define_keys(
            {
                "all": lambda: ("comments",),
                "list": lambda post_id: ("comments", "list", post_id),
            }
        )
        assert keys["all"]() == ("comments",)
        assert keys["list"](7) == ("comments", "list", 7)

    def test_keys_compare_by_value(self) -> None:
        keys = define_keys({"detail": lambda id: ("studies", "detail", id)})
        assert keys["detail"]("s1") == keys["detail"]("s1")
        assert hash(keys["detail"]("s1")) == hash(("studies", "detail", "s1"))


class TestMatching:
    """Prefix, exact and predicate matching."""

    def test_prefix(self) -> None:
        assert is_key_prefix(("comments", "list"), ("comments", "list", 7))
        assert not is_key_prefix(("comments", "list", 7), ("comments", "list"))
        assert not is_key_prefix(("comments", "detail"), ("comments", "list", 7))

    def test_matches_exact(self) -> None:
        assert matches(("a", 1), ("a", 1), exact=True)
        assert not matches(("a",), ("a", 1), exact=True)
        assert matches(("a",), ("a", 1))

    def test_under_predicate(self) -> None:
        pred = under("comments", "list")
        assert pred(("comments", "list", 1))
        assert not pred(("comments", "detail", 1))
        assert matches(pred, ("comments", "list", 2))


class TestBatchKeys:
    """Batch keys are order independent and searchable by member."""

    def test_member_name(self) -> None:
        assert batch_member("lecture", 42) == "lecture-42"

    def test_order_independent(self) -> None:
        assert batch_key("root", ["b", "a"]) == batch_key("root", ["a", "b"])

    def test_contains_member(self) -> None:
        key = batch_key("bookmarks-batch-status", ["lecture-42", "post-1"])
        assert contains_member("bookmarks-batch-status", "lecture-42")(key)
        assert not contains_member("bookmarks-batch-status", "lecture-4")(key)
        assert not contains_member("other", "lecture-42")(key)
        assert not contains_member("bookmarks-batch-status", "x")(("bookmarks-batch-status",))


class TestSerializeKey:
    def test_simple(self) -> None:
        assert serialize_key(("lecture-bookmark", "status", 42)) == "lecture-bookmark:status:42"

    def test_escapes_and_nesting(self) -> None:
        assert serialize_key(("a:b", ("x", "y"))) == "a\\:b:[x,y]"
