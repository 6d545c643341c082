"""
Temporal clustering of the notification feed into an activity timeline.

Three claiming passes run in priority order, each removing what it claims
from consideration by the later ones:

1. user-activity bursts: one account doing >= 3 things within 30 minutes
2. post-engagement bursts: >= 3 likes/reposts/quotes/replies on one post
3. follow bursts: follows less than 2 hours apart

Anything left becomes a single ``mixed`` event. Every notification ends up
in exactly one event, and identical input always yields identical output.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, Field

from adapter.models import Author, Notification, NotificationReason, Post

USER_ACTIVITY_WINDOW = timedelta(minutes=30)
USER_ACTIVITY_MIN_COUNT = 3

POST_BURST_MIN_COUNT = 3
POST_BURST_REASONS = (
    NotificationReason.LIKE,
    NotificationReason.REPOST,
    NotificationReason.QUOTE,
    NotificationReason.REPLY,
)

# (minimum count, maximum span) per intensity, checked in order
BURST_INTENSITY_RULES = (
    ("high", 10, timedelta(hours=6)),
    ("medium", 5, timedelta(hours=12)),
)

FOLLOW_BURST_GAP = timedelta(hours=2)
FOLLOW_BURST_MIN_COUNT = 2


class AggregationType(str, Enum):
    POST = "post"
    FOLLOW = "follow"
    MIXED = "mixed"
    POST_BURST = "post-burst"
    USER_ACTIVITY = "user-activity"


class BurstIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AffectedPost(BaseModel):
    """A post touched by a user-activity burst."""
    uri: str
    text: Optional[str] = Field(default=None)


class AggregatedEvent(BaseModel):
    """
    One entry of the activity timeline.

    ``time`` is the representative time used for ordering: the latest
    notification of a burst, or the notification's own time for singletons.
    """
    time: datetime
    notifications: List[Notification]
    types: Set[NotificationReason]
    actors: Set[str]
    aggregation_type: AggregationType
    earliest_time: Optional[datetime] = Field(default=None)
    latest_time: Optional[datetime] = Field(default=None)
    burst_intensity: Optional[BurstIntensity] = Field(default=None)
    post_uri: Optional[str] = Field(default=None)
    post_text: Optional[str] = Field(default=None)
    primary_actor: Optional[Author] = Field(default=None)
    affected_posts: Optional[List[AffectedPost]] = Field(default=None)


def _post_text(post_cache: Mapping[str, Post], uri: str) -> Optional[str]:
    post = post_cache.get(uri)
    return post.text if post is not None else None


def burst_intensity(count: int, span: timedelta) -> BurstIntensity:
    """Intensity of a post burst from its size and time span."""
    for level, min_count, max_span in BURST_INTENSITY_RULES:
        if count >= min_count and span <= max_span:
            return BurstIntensity(level)
    return BurstIntensity.LOW


def _single_event(
    notification: Notification,
    aggregation_type: AggregationType,
    post_uri: Optional[str] = None,
    post_text: Optional[str] = None,
) -> AggregatedEvent:
    return AggregatedEvent(
        time=notification.indexed_at,
        notifications=[notification],
        types={notification.reason},
        actors={notification.author.handle},
        aggregation_type=aggregation_type,
        post_uri=post_uri,
        post_text=post_text,
    )


def _user_activity_event(run: List[Notification], post_cache: Mapping[str, Post]) -> AggregatedEvent:
    affected: Dict[str, AffectedPost] = {}
    for notification in run:
        uri = notification.subject_uri
        if uri not in affected:
            affected[uri] = AffectedPost(uri=uri, text=_post_text(post_cache, uri))

    latest = max(n.indexed_at for n in run)
    return AggregatedEvent(
        time=latest,
        notifications=list(run),
        types={n.reason for n in run},
        actors={run[0].actor_key},
        aggregation_type=AggregationType.USER_ACTIVITY,
        earliest_time=min(n.indexed_at for n in run),
        latest_time=latest,
        primary_actor=run[0].author,
        affected_posts=list(affected.values()),
    )


def _user_activity_pass(
    ordered: List[Notification],
    claimed: Set[int],
    post_cache: Mapping[str, Post],
) -> List[AggregatedEvent]:
    by_user: Dict[str, List[int]] = defaultdict(list)
    for index, notification in enumerate(ordered):
        by_user[notification.actor_key].append(index)

    events = []
    for indices in by_user.values():
        runs: List[List[int]] = []
        current: List[int] = []
        for index in indices:
            # ordered is newest first, so current[-1] is the run's earliest member
            if current and ordered[current[-1]].indexed_at - ordered[index].indexed_at > USER_ACTIVITY_WINDOW:
                runs.append(current)
                current = []
            current.append(index)
        if current:
            runs.append(current)

        for run in runs:
            if len(run) < USER_ACTIVITY_MIN_COUNT:
                continue
            claimed.update(run)
            events.append(_user_activity_event([ordered[i] for i in run], post_cache))

    return events


def _post_burst_pass(
    ordered: List[Notification],
    claimed: Set[int],
    post_cache: Mapping[str, Post],
) -> List[AggregatedEvent]:
    by_post: Dict[str, List[int]] = defaultdict(list)
    for index, notification in enumerate(ordered):
        if index in claimed or notification.reason not in POST_BURST_REASONS:
            continue
        by_post[notification.subject_uri].append(index)

    events = []
    for post_uri, indices in by_post.items():
        claimed.update(indices)
        group = [ordered[i] for i in indices]
        text = _post_text(post_cache, post_uri)

        if len(group) < POST_BURST_MIN_COUNT:
            events.extend(_single_event(n, AggregationType.POST, post_uri, text) for n in group)
            continue

        earliest = min(n.indexed_at for n in group)
        latest = max(n.indexed_at for n in group)
        events.append(AggregatedEvent(
            time=latest,
            notifications=group,
            types={n.reason for n in group},
            actors={n.author.handle for n in group},
            aggregation_type=AggregationType.POST_BURST,
            earliest_time=earliest,
            latest_time=latest,
            burst_intensity=burst_intensity(len(group), latest - earliest),
            post_uri=post_uri,
            post_text=text,
        ))

    return events


def _follow_pass(ordered: List[Notification], claimed: Set[int]) -> List[AggregatedEvent]:
    follows = [
        i for i, n in enumerate(ordered)
        if i not in claimed and n.reason == NotificationReason.FOLLOW
    ]

    clusters: List[List[int]] = []
    current: List[int] = []
    for index in follows:
        if current and abs(ordered[current[-1]].indexed_at - ordered[index].indexed_at) > FOLLOW_BURST_GAP:
            clusters.append(current)
            current = []
        current.append(index)
    if current:
        clusters.append(current)

    events = []
    for cluster in clusters:
        claimed.update(cluster)
        group = [ordered[i] for i in cluster]
        if len(group) < FOLLOW_BURST_MIN_COUNT:
            events.append(_single_event(group[0], AggregationType.FOLLOW))
            continue

        latest = max(n.indexed_at for n in group)
        events.append(AggregatedEvent(
            time=latest,
            notifications=group,
            types={NotificationReason.FOLLOW},
            actors={n.author.handle for n in group},
            aggregation_type=AggregationType.FOLLOW,
            earliest_time=min(n.indexed_at for n in group),
            latest_time=latest,
        ))

    return events


def build_timeline(
    notifications: Iterable[Notification],
    post_cache: Mapping[str, Post],
) -> List[AggregatedEvent]:
    """
    Cluster the complete notification set into timeline events.

    Args:
        notifications: All notifications, any reason, in feed order
        post_cache: Known posts keyed by URI (used for preview text only)

    Returns:
        Events sorted by representative time, newest first
    """
    # Stable sort: equal timestamps keep feed order
    ordered = sorted(notifications, key=lambda n: n.indexed_at, reverse=True)
    claimed: Set[int] = set()

    events = _user_activity_pass(ordered, claimed, post_cache)
    events.extend(_post_burst_pass(ordered, claimed, post_cache))
    events.extend(_follow_pass(ordered, claimed))
    events.extend(
        _single_event(n, AggregationType.MIXED)
        for i, n in enumerate(ordered)
        if i not in claimed
    )

    events.sort(key=lambda e: e.time, reverse=True)
    return events


def _day_label(day: datetime, today: datetime) -> str:
    delta = (today.date() - day.date()).days
    if delta == 0:
        return "Today"
    if delta == 1:
        return "Yesterday"
    return f"{day.strftime('%A, %B')} {day.day}"


def group_events_by_day(
    events: List[AggregatedEvent],
    now: Optional[datetime] = None,
) -> List[Tuple[str, List[AggregatedEvent]]]:
    """
    Group timeline events under day labels, keeping their order.

    Labels are "Today", "Yesterday" or e.g. "Monday, March 3". Days are
    taken in the timezone of ``now`` (UTC by default).
    """
    now = now or datetime.now(timezone.utc)
    tz = now.tzinfo or timezone.utc

    groups: Dict[str, List[AggregatedEvent]] = {}
    for event in events:
        label = _day_label(event.time.astimezone(tz), now)
        groups.setdefault(label, []).append(event)
    return list(groups.items())


__all__ = [
    "AffectedPost",
    "AggregatedEvent",
    "AggregationType",
    "BurstIntensity",
    "build_timeline",
    "burst_intensity",
    "group_events_by_day",
]
