"""Unit tests for thread-root resolution."""

import pytest

from aggregator import RootSource, resolve_root, resolve_root_with_source
from helpers import cache_of, make_notification, make_post, post_uri

ROOT = post_uri("root")
PARENT = post_uri("parent")
REPLY = post_uri("reply", handle="carol")


class TestResolveRoot:
    """Test the resolution priority order."""

    def test_declared_root_is_authoritative(self):
        """A cached post declaring reply.root wins over everything else."""
        cache = cache_of(make_post(REPLY, root=ROOT, parent=PARENT))
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        result = resolve_root_with_source(notification, cache)

        assert result.uri == ROOT
        assert result.source == RootSource.DECLARED

    def test_walks_parent_chain(self):
        """Parent-only references are followed through the cache."""
        cache = cache_of(
            make_post(REPLY, parent=PARENT),
            make_post(PARENT, parent=ROOT),
            make_post(ROOT, text="original"),
        )
        notification = make_notification(REPLY, reason="reply")

        result = resolve_root_with_source(notification, cache)

        assert result.uri == ROOT
        assert result.source == RootSource.CHAIN

    def test_chain_stops_at_declared_root(self):
        """An ancestor that declares its root ends the walk."""
        cache = cache_of(
            make_post(REPLY, parent=PARENT),
            make_post(PARENT, root=ROOT, parent=post_uri("grandparent")),
        )

        assert resolve_root(make_notification(REPLY, reason="reply"), cache) == ROOT

    def test_chain_stops_at_cache_miss(self):
        """The last resolvable URI is returned when an ancestor is missing."""
        cache = cache_of(
            make_post(REPLY, parent=PARENT),
            make_post(PARENT, parent=ROOT),
        )

        assert resolve_root(make_notification(REPLY, reason="reply"), cache) == PARENT

    def test_cached_post_with_uncached_parent_is_self_rooted(self):
        """No step up is possible, so the post itself is the root."""
        cache = cache_of(make_post(REPLY, parent=PARENT))
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        result = resolve_root_with_source(notification, cache)

        assert result.uri == REPLY
        assert result.source == RootSource.SELF

    def test_provisional_root_from_reason_subject(self):
        """Without the post, reasonSubject is a stable placeholder."""
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        result = resolve_root_with_source(notification, {})

        assert result.uri == PARENT
        assert result.source == RootSource.PROVISIONAL

    def test_provisional_root_follows_cached_subject(self):
        """A missing reply whose parent is cached takes the parent's declared root."""
        cache = cache_of(
            make_post(PARENT, root=ROOT, parent=ROOT),
            make_post(ROOT, text="original"),
        )
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        result = resolve_root_with_source(notification, cache)

        assert result.uri == ROOT
        assert result.source == RootSource.PROVISIONAL

    def test_provisional_root_walks_subject_chain(self):
        """Parent-only references from the cached subject are followed."""
        grandparent = post_uri("grandparent")
        cache = cache_of(
            make_post(PARENT, parent=grandparent),
            make_post(grandparent, text="top"),
        )
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        assert resolve_root(notification, cache) == grandparent

    def test_self_rooted_without_data(self):
        """A mention with nothing cached is its own root."""
        notification = make_notification(REPLY, reason="mention")

        result = resolve_root_with_source(notification, {})

        assert result.uri == REPLY
        assert result.source == RootSource.SELF


class TestResolveRootEdgeCases:
    """Cycles and malformed records."""

    def test_two_post_cycle_terminates(self):
        """A's parent is B and B's parent is A: resolution returns a bounded result."""
        a, b = post_uri("a"), post_uri("b")
        cache = cache_of(make_post(a, parent=b), make_post(b, parent=a))

        assert resolve_root(make_notification(a, reason="reply"), cache) in {a, b}
        assert resolve_root(make_notification(b, reason="reply"), cache) in {a, b}

    def test_self_parent_terminates(self):
        """A post naming itself as parent resolves to itself."""
        a = post_uri("a")
        cache = cache_of(make_post(a, parent=a))

        assert resolve_root(make_notification(a, reason="reply"), cache) == a

    def test_long_chain(self):
        """Deep chains resolve iteratively."""
        uris = [post_uri(f"p{i}") for i in range(2000)]
        posts = [make_post(uris[0], text="root")]
        posts += [make_post(uris[i], parent=uris[i - 1]) for i in range(1, len(uris))]

        assert resolve_root(make_notification(uris[-1], reason="reply"), cache_of(*posts)) == uris[0]

    @pytest.mark.parametrize("record", [
        {"reply": "not-a-dict"},
        {"reply": {"root": "at://nope"}},
        {"reply": {"root": {"uri": 42}, "parent": {"uri": None}}},
        {"reply": {"root": {}, "parent": []}},
    ])
    def test_malformed_reply_is_self_rooted(self, record):
        """Ill-typed reply references are ignored."""
        cache = cache_of(make_post(REPLY, record=record))
        notification = make_notification(REPLY, reason="reply", reason_subject=PARENT)

        assert resolve_root(notification, cache) == REPLY
