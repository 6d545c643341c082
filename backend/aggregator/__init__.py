"""
Aggregation engine for the notification feed.

Architecture:
- Notifications and posts are the source of truth
- Threads and timeline events are derived on demand, never patched in place
- Every derivation is a pure function of (notifications, post cache)

This allows:
- Recomputing safely on every change of either input
- Memoizing on input versions
- Replies regrouping under their true root as soon as it is fetched
"""

from adapter.models import Author, Notification, NotificationReason, Post

from .discovery import (
    MAX_POSTS_PER_REQUEST,
    chunk_uris,
    discover_missing_roots,
    notification_post_uris,
)
from .roots import RootResolution, RootSource, resolve_root, resolve_root_with_source
from .threads import ConversationThread, build_conversation_threads, filter_threads
from .timeline import (
    AffectedPost,
    AggregatedEvent,
    AggregationType,
    BurstIntensity,
    build_timeline,
    burst_intensity,
    group_events_by_day,
)

__all__ = [
    "AffectedPost",
    "AggregatedEvent",
    "AggregationType",
    "Author",  # Re-exported from adapter.models
    "BurstIntensity",
    "ConversationThread",
    "MAX_POSTS_PER_REQUEST",
    "Notification",  # Re-exported from adapter.models
    "NotificationReason",  # Re-exported from adapter.models
    "Post",  # Re-exported from adapter.models
    "RootResolution",
    "RootSource",
    "build_conversation_threads",
    "build_timeline",
    "burst_intensity",
    "chunk_uris",
    "discover_missing_roots",
    "filter_threads",
    "group_events_by_day",
    "notification_post_uris",
    "resolve_root",
    "resolve_root_with_source",
]
