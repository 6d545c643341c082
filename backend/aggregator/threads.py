"""
Conversation threads built from reply notifications.

Threads are recomputed from scratch on every change of the notification set
or the post cache; nothing here mutates its inputs.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel, Field

from adapter.models import Notification, NotificationReason, Post
from .roots import RootSource, resolve_root_with_source

logger = logging.getLogger(__name__)


class ConversationThread(BaseModel):
    """Reply notifications grouped under one resolved root."""
    root_uri: str = Field(description="URI of the thread root (possibly provisional)")
    root_post: Optional[Post] = Field(default=None, description="Root post if cached")
    replies: List[Notification] = Field(default_factory=list)
    participants: Set[str] = Field(default_factory=set, description="Handles of repliers")
    latest_reply: Notification
    total_replies: int = Field(default=0)
    original_post_time: Optional[datetime] = Field(default=None)

    @property
    def unread_count(self) -> int:
        return sum(1 for reply in self.replies if not reply.is_read)

    @property
    def is_group(self) -> bool:
        return len(self.participants) > 2


def _original_post_time(root_post: Optional[Post]) -> Optional[datetime]:
    if root_post is None:
        return None
    return root_post.created_at or root_post.indexed_at


def build_conversation_threads(
    notifications: Iterable[Notification],
    post_cache: Mapping[str, Post],
) -> List[ConversationThread]:
    """
    Partition reply notifications into conversation threads.

    Non-reply notifications are ignored, so the whole feed may be passed in.
    A notification whose root cannot be resolved is grouped under its own URI.

    Args:
        notifications: Notifications in feed order
        post_cache: Known posts keyed by URI

    Returns:
        Threads sorted by latest reply, most recent first
    """
    threads: Dict[str, ConversationThread] = {}
    sources: Counter = Counter()

    for notification in notifications:
        if notification.reason != NotificationReason.REPLY:
            continue

        try:
            root_uri, source = resolve_root_with_source(notification, post_cache)
        except Exception as e:
            logger.warning(f"Root resolution failed for {notification.uri}, self-rooting: {e}")
            root_uri, source = notification.uri, RootSource.SELF
        sources[source.value] += 1

        thread = threads.get(root_uri)
        if thread is None:
            root_post = post_cache.get(root_uri)
            thread = ConversationThread(
                root_uri=root_uri,
                root_post=root_post,
                latest_reply=notification,
                original_post_time=_original_post_time(root_post),
            )
            threads[root_uri] = thread

        thread.replies.append(notification)
        thread.participants.add(notification.author.handle)
        thread.total_replies += 1

        if notification.indexed_at > thread.latest_reply.indexed_at:
            thread.latest_reply = notification

    logger.debug(
        f"Grouped {sum(sources.values())} replies into {len(threads)} threads "
        f"(sources: {dict(sources)})"
    )

    return sorted(
        threads.values(),
        key=lambda t: t.latest_reply.indexed_at,
        reverse=True,
    )


def filter_threads(
    threads: List[ConversationThread],
    query: Optional[str],
    post_cache: Mapping[str, Post],
) -> List[ConversationThread]:
    """
    Case-insensitive search over participants, root text and reply text.

    An empty query returns the threads unchanged.
    """
    if not query:
        return threads

    needle = query.lower()

    def post_matches(uri: str) -> bool:
        post = post_cache.get(uri)
        return bool(post and post.text and needle in post.text.lower())

    matched = []
    for thread in threads:
        if any(needle in handle.lower() for handle in thread.participants):
            matched.append(thread)
        elif post_matches(thread.root_uri):
            matched.append(thread)
        elif any(post_matches(reply.uri) for reply in thread.replies):
            matched.append(thread)
    return matched


__all__ = ["ConversationThread", "build_conversation_threads", "filter_threads"]
