"""
Pure helpers for incremental root discovery.

Posts fetched for reply notifications often reference a thread root that
has not been fetched yet. These helpers compute what is still missing; the
stateful fetch loop lives in core.RootDiscovery.
"""

from __future__ import annotations

from typing import AbstractSet, Iterable, Iterator, List, Mapping, Set

from adapter.models import Notification, NotificationReason, Post

# app.bsky.feed.getPosts accepts at most 25 URIs per request
MAX_POSTS_PER_REQUEST = 25

_POST_REASONS = (
    NotificationReason.LIKE,
    NotificationReason.REPOST,
    NotificationReason.REPLY,
    NotificationReason.QUOTE,
)


def discover_missing_roots(
    post_cache: Mapping[str, Post],
    in_flight: AbstractSet[str],
) -> Set[str]:
    """
    Root URIs referenced by cached posts that are neither cached nor requested.

    Args:
        post_cache: Known posts keyed by URI
        in_flight: URIs already requested and not yet merged

    Returns:
        referenced roots - cached URIs - in-flight URIs
    """
    referenced = set()
    for post in post_cache.values():
        root = post.reply_root_uri
        if root:
            referenced.add(root)
    return referenced - set(post_cache.keys()) - set(in_flight)


def notification_post_uris(notifications: Iterable[Notification]) -> List[str]:
    """
    Ordered, de-duplicated list of posts worth fetching for a feed.

    Likes and reposts contribute the post they target, replies and quotes
    their own record. Replies also contribute the post being replied to so
    that parent chains can be walked before the roots are discovered.
    """
    seen: Set[str] = set()
    ordered: List[str] = []

    def add(uri: str) -> None:
        if uri and uri not in seen:
            seen.add(uri)
            ordered.append(uri)

    for notification in notifications:
        if notification.reason not in _POST_REASONS:
            continue
        add(notification.subject_uri)
        if notification.reason == NotificationReason.REPLY and notification.reason_subject:
            add(notification.reason_subject)

    return ordered


def chunk_uris(uris: Iterable[str], size: int = MAX_POSTS_PER_REQUEST) -> Iterator[List[str]]:
    """Split URIs into request-sized batches, preserving order."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    batch: List[str] = []
    for uri in uris:
        batch.append(uri)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


__all__ = [
    "MAX_POSTS_PER_REQUEST",
    "chunk_uris",
    "discover_missing_roots",
    "notification_post_uris",
]
