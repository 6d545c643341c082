"""Factories shared by the test modules."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from adapter.models import Author, Notification, Post

BASE_TIME = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def make_author(handle: str) -> Author:
    return Author(did=f"did:plc:{handle}", handle=handle, display_name=handle.title())


def make_notification(
    uri: str,
    reason: str = "like",
    handle: str = "alice",
    at: datetime = None,
    reason_subject: Optional[str] = None,
    is_read: bool = False,
) -> Notification:
    """Helper function to create test notifications."""
    return Notification(
        uri=uri,
        reason=reason,
        author=make_author(handle),
        indexed_at=at or BASE_TIME,
        reason_subject=reason_subject,
        is_read=is_read,
    )


def make_post(
    uri: str,
    text: Optional[str] = None,
    root: Optional[str] = None,
    parent: Optional[str] = None,
    created_at: Optional[str] = None,
    indexed_at: datetime = None,
    handle: str = "bob",
    record: Optional[dict] = None,
) -> Post:
    """Helper function to create test posts with an optional reply reference."""
    if record is None:
        record = {}
        if text is not None:
            record["text"] = text
        if created_at is not None:
            record["createdAt"] = created_at
        if root or parent:
            record["reply"] = {}
            if root:
                record["reply"]["root"] = {"uri": root, "cid": "bafyroot"}
            if parent:
                record["reply"]["parent"] = {"uri": parent, "cid": "bafyparent"}
    return Post(
        uri=uri,
        cid="bafy" + uri.rsplit("/", 1)[-1],
        author=make_author(handle),
        record=record,
        indexed_at=indexed_at or BASE_TIME,
    )


def cache_of(*posts: Post) -> Dict[str, Post]:
    return {post.uri: post for post in posts}


def post_uri(rkey: str, handle: str = "bob") -> str:
    return f"at://did:plc:{handle}/app.bsky.feed.post/{rkey}"
