"""
Thread-root resolution for reply notifications.

The reply chain is a back-reference graph with no guaranteed depth bound,
so resolution walks it iteratively over the uri-indexed post cache with an
explicit visited set. Resolution always terminates.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, NamedTuple

from adapter.models import Notification, Post


class RootSource(str, Enum):
    """How a root URI was determined."""
    DECLARED = "declared"        # post record carries reply.root
    CHAIN = "chain"              # walked reply.parent links through the cache
    PROVISIONAL = "provisional"  # post not cached yet, reasonSubject used as placeholder
    SELF = "self"                # notification is its own root


class RootResolution(NamedTuple):
    uri: str
    source: RootSource


def _walk_parents(uri: str, post_cache: Mapping[str, Post]) -> RootResolution:
    visited = {uri}
    current = uri

    while True:
        post = post_cache.get(current)
        if post is None:
            break

        root = post.reply_root_uri
        if root and current != uri:
            return RootResolution(root, RootSource.CHAIN)

        parent = post.reply_parent_uri
        if not parent or parent not in post_cache:
            break
        if parent in visited:
            return RootResolution(parent, RootSource.CHAIN)

        visited.add(parent)
        current = parent

    source = RootSource.CHAIN if current != uri else RootSource.SELF
    return RootResolution(current, source)


def resolve_root_with_source(
    notification: Notification,
    post_cache: Mapping[str, Post],
) -> RootResolution:
    """
    Compute the canonical thread root for a notification.

    Priority order:
        1. The cached post declares ``reply.root``: authoritative.
        2. The cached post declares only ``reply.parent`` and the parent is
           cached: follow parents until a declared root, a cache miss or a
           revisited URI.
        3. No cached post but ``reasonSubject`` present: provisional root,
           resolved through the replied-to post when that one is cached.
        4. Otherwise the notification's own URI.

    Args:
        notification: Notification to resolve
        post_cache: Known posts keyed by URI

    Returns:
        RootResolution with the root URI and how it was found
    """
    post = post_cache.get(notification.uri)

    if post is not None:
        declared = post.reply_root_uri
        if declared:
            return RootResolution(declared, RootSource.DECLARED)
        return _walk_parents(notification.uri, post_cache)

    subject = notification.reason_subject
    if subject:
        # The replied-to post may already be cached even if the reply is not
        subject_post = post_cache.get(subject)
        if subject_post is not None:
            root = subject_post.reply_root_uri or _walk_parents(subject, post_cache).uri
            return RootResolution(root, RootSource.PROVISIONAL)
        return RootResolution(subject, RootSource.PROVISIONAL)

    return RootResolution(notification.uri, RootSource.SELF)


def resolve_root(notification: Notification, post_cache: Mapping[str, Post]) -> str:
    """Root URI for a notification. See resolve_root_with_source."""
    return resolve_root_with_source(notification, post_cache).uri


__all__ = ["RootResolution", "RootSource", "resolve_root", "resolve_root_with_source"]
