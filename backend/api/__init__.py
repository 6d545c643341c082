"""
FastAPI routes for the notifications backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from adapter.bluesky import BlueskyAdapterError
from adapter.models import Author
from aggregator import AffectedPost, AggregatedEvent, ConversationThread, group_events_by_day
from core import NotificationPoller, NotificationSession, RefreshSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


# ============================================================================
# Response Models
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    notifications: int
    cached_posts: int


class ReplyResponse(BaseModel):
    uri: str
    author: Author
    indexed_at: datetime
    is_read: bool
    text: Optional[str] = None


class ThreadResponse(BaseModel):
    """Conversation thread response."""
    root_uri: str
    root_text: Optional[str]
    root_author: Optional[Author]
    original_post_time: Optional[datetime]
    participants: List[str]
    total_replies: int
    unread_count: int
    is_group: bool
    latest_reply: ReplyResponse
    replies: List[ReplyResponse]

    @classmethod
    def from_thread(cls, thread: ConversationThread, session: NotificationSession) -> "ThreadResponse":
        def reply(notification) -> ReplyResponse:
            post = session.post_cache.get(notification.uri)
            return ReplyResponse(
                uri=notification.uri,
                author=notification.author,
                indexed_at=notification.indexed_at,
                is_read=notification.is_read,
                text=post.text if post else None,
            )

        return cls(
            root_uri=thread.root_uri,
            root_text=thread.root_post.text if thread.root_post else None,
            root_author=thread.root_post.author if thread.root_post else None,
            original_post_time=thread.original_post_time,
            participants=sorted(thread.participants),
            total_replies=thread.total_replies,
            unread_count=thread.unread_count,
            is_group=thread.is_group,
            latest_reply=reply(thread.latest_reply),
            replies=[reply(n) for n in thread.replies],
        )


class EventResponse(BaseModel):
    """Timeline event response."""
    time: datetime
    aggregation_type: str
    notification_uris: List[str]
    count: int
    types: List[str]
    actors: List[str]
    earliest_time: Optional[datetime] = None
    latest_time: Optional[datetime] = None
    burst_intensity: Optional[str] = None
    post_uri: Optional[str] = None
    post_text: Optional[str] = None
    primary_actor: Optional[Author] = None
    affected_posts: Optional[List[AffectedPost]] = None

    @classmethod
    def from_event(cls, event: AggregatedEvent) -> "EventResponse":
        return cls(
            time=event.time,
            aggregation_type=event.aggregation_type.value,
            notification_uris=[n.uri for n in event.notifications],
            count=len(event.notifications),
            types=sorted(t.value for t in event.types),
            actors=sorted(event.actors),
            earliest_time=event.earliest_time,
            latest_time=event.latest_time,
            burst_intensity=event.burst_intensity.value if event.burst_intensity else None,
            post_uri=event.post_uri,
            post_text=event.post_text,
            primary_actor=event.primary_actor,
            affected_posts=event.affected_posts,
        )


class DayResponse(BaseModel):
    label: str
    events: List[EventResponse]


class StatusResponse(BaseModel):
    notifications: int
    cached_posts: int
    in_flight: int
    unavailable_posts: int
    missing_roots: int
    root_migrations: dict = Field(default_factory=dict)
    refresh_count: int
    last_refresh: Optional[datetime]
    last_error: Optional[str]
    rate_limit: dict = Field(default_factory=dict)


# ============================================================================
# Dependencies
# ============================================================================

_session: Optional[NotificationSession] = None
_poller: Optional[NotificationPoller] = None


def set_dependencies(session: NotificationSession, poller: NotificationPoller):
    """Set the service dependencies (called from main app)."""
    global _session, _poller
    _session = session
    _poller = poller


def get_session() -> NotificationSession:
    if _session is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _session


def get_poller() -> NotificationPoller:
    if _poller is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _poller


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(session: NotificationSession = Depends(get_session)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        notifications=len(session.notifications),
        cached_posts=len(session.post_cache),
    )


@router.get("/notifications/threads", response_model=List[ThreadResponse])
async def list_threads(
    q: Optional[str] = Query(default=None, description="Search participants and post text"),
    limit: int = Query(default=50, ge=1, le=500),
    session: NotificationSession = Depends(get_session),
):
    """Reply notifications grouped into conversations, most recently active first."""
    threads = session.get_threads(query=q)
    return [ThreadResponse.from_thread(t, session) for t in threads[:limit]]


@router.get("/notifications/timeline", response_model=List[EventResponse])
async def get_timeline(
    limit: int = Query(default=100, ge=1, le=1000),
    session: NotificationSession = Depends(get_session),
):
    """Aggregated activity timeline, newest first."""
    return [EventResponse.from_event(e) for e in session.get_timeline()[:limit]]


@router.get("/notifications/timeline/days", response_model=List[DayResponse])
async def get_timeline_by_day(session: NotificationSession = Depends(get_session)):
    """Timeline events grouped under day labels."""
    return [
        DayResponse(label=label, events=[EventResponse.from_event(e) for e in events])
        for label, events in group_events_by_day(session.get_timeline())
    ]


@router.get("/notifications/status", response_model=StatusResponse)
async def get_status(session: NotificationSession = Depends(get_session)):
    """Session counters, discovery state and rate-limit status."""
    return StatusResponse(**session.status(), rate_limit=session.adapter.get_rate_limit_status())


@router.post("/notifications/refresh", response_model=RefreshSummary)
async def refresh_notifications(poller: NotificationPoller = Depends(get_poller)):
    """Fetch new notifications and posts now."""
    try:
        return await poller.poll_now()
    except BlueskyAdapterError as e:
        raise HTTPException(status_code=502, detail=f"Bluesky request failed: {e}")


__all__ = ["router", "set_dependencies"]
