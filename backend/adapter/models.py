"""
Shared data models for adapters.

Notifications and posts arrive as AT Protocol JSON (camelCase keys) and are
parsed through field aliases. Post records are kept as raw mappings so that
a malformed ``reply`` or ``createdAt`` never fails parsing; the typed
accessors below return ``None`` for anything absent or ill-typed.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NotificationReason(str, Enum):
    """Category of an interaction event, as defined by app.bsky.notification."""
    LIKE = "like"
    REPOST = "repost"
    FOLLOW = "follow"
    MENTION = "mention"
    REPLY = "reply"
    QUOTE = "quote"
    STARTERPACK_JOINED = "starterpack-joined"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    LIKE_VIA_REPOST = "like-via-repost"
    REPOST_VIA_REPOST = "repost-via-repost"


def _as_utc(value: datetime) -> datetime:
    # Timestamps without an offset are taken as UTC so feeds always compare
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class Author(BaseModel):
    """
    Profile summary attached to notifications and posts.

    Attributes:
        did: Decentralized identifier of the account
        handle: Account handle (without @)
        display_name: Optional display name
        avatar: Optional avatar URL
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    did: str = Field(description="Account DID")
    handle: str = Field(description="Account handle (without @)")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    avatar: Optional[str] = Field(default=None)


class Notification(BaseModel):
    """A single entry of the notification feed. Immutable once fetched."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str = Field(description="AT URI of the record that caused the notification")
    cid: Optional[str] = Field(default=None)
    reason: NotificationReason
    author: Author
    indexed_at: datetime = Field(alias="indexedAt")
    reason_subject: Optional[str] = Field(default=None, alias="reasonSubject")
    is_read: bool = Field(default=False, alias="isRead")

    @field_validator("indexed_at")
    @classmethod
    def _indexed_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def actor_key(self) -> str:
        """Key used to group notifications by acting user."""
        return self.author.handle or self.author.did or "unknown"

    @property
    def subject_uri(self) -> str:
        """
        URI of the post this notification is about.

        Likes and reposts point at the liked/reposted post through
        ``reasonSubject``; every other reason is about its own record.
        """
        if self.reason in (NotificationReason.LIKE, NotificationReason.REPOST) and self.reason_subject:
            return self.reason_subject
        return self.uri


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _ref_uri(reply: Any, key: str) -> Optional[str]:
    if not isinstance(reply, dict):
        return None
    ref = reply.get(key)
    if not isinstance(ref, dict):
        return None
    return _str_or_none(ref.get("uri"))


class Post(BaseModel):
    """A post view as returned by app.bsky.feed.getPosts."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str
    cid: Optional[str] = Field(default=None)
    author: Optional[Author] = Field(default=None)
    record: Dict[str, Any] = Field(default_factory=dict)
    indexed_at: Optional[datetime] = Field(default=None, alias="indexedAt")

    @field_validator("indexed_at")
    @classmethod
    def _indexed_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None

    @property
    def reply_root_uri(self) -> Optional[str]:
        return _ref_uri(self.record.get("reply"), "root")

    @property
    def reply_parent_uri(self) -> Optional[str]:
        return _ref_uri(self.record.get("reply"), "parent")

    @property
    def text(self) -> Optional[str]:
        return _str_or_none(self.record.get("text"))

    @property
    def created_at(self) -> Optional[datetime]:
        """Record creation time, or None if missing or unparseable."""
        raw = _str_or_none(self.record.get("createdAt"))
        if raw is None:
            return None
        try:
            return _as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            return None


class NotificationPage(BaseModel):
    """One page of the paginated notification feed."""
    notifications: List[Notification] = Field(default_factory=list)
    cursor: Optional[str] = Field(default=None)


__all__ = ["Author", "Notification", "NotificationPage", "NotificationReason", "Post"]
