"""
Bluesky (AT Protocol) XRPC adapter.

Provides the two fetch operations the aggregation engine depends on:
paginated notification listing and batched post hydration. Uses plain
HTTPS XRPC calls against the account's PDS, which proxies app.bsky.*
methods to the AppView.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from pydantic import ValidationError

from ..models import Notification, NotificationPage, NotificationReason, Post
from ..rate_limiter import RateLimiter, create_bsky_limiter

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_URL = "https://bsky.social"
MAX_POSTS_PER_REQUEST = 25
MAX_NOTIFICATIONS_PER_PAGE = 100

_KNOWN_REASONS = {reason.value for reason in NotificationReason}


class BlueskyAdapterError(Exception):
    """Base exception for BlueskyAdapter errors."""
    pass


class BlueskyAuthenticationError(BlueskyAdapterError):
    """Raised when credentials are missing, invalid or expired."""
    pass


class BlueskyRateLimitError(BlueskyAdapterError):
    """Raised when the server answers 429."""
    def __init__(self, message: str, reset_time: int = None, remaining: int = None, limit: int = None):
        super().__init__(message)
        self.reset_time = reset_time  # Unix timestamp when limit resets
        self.remaining = remaining
        self.limit = limit


class BlueskyAPIError(BlueskyAdapterError):
    """Raised when the API returns an error or cannot be reached."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


def _int_header(headers, name: str) -> Optional[int]:
    value = headers.get(name)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class BlueskyAdapter:
    """
    Adapter for the Bluesky XRPC API.

    Usage:
        adapter = BlueskyAdapter()  # Uses BSKY_HANDLE / BSKY_APP_PASSWORD env vars
        page = adapter.list_notifications(limit=50)
        posts = adapter.get_posts([n.uri for n in page.notifications][:25])
    """

    def __init__(
        self,
        handle: Optional[str] = None,
        app_password: Optional[str] = None,
        access_jwt: Optional[str] = None,
        service_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 15,
    ):
        """
        Initialize the Bluesky adapter.

        Args:
            handle: Account handle (or set BSKY_HANDLE env var)
            app_password: App password (or set BSKY_APP_PASSWORD env var)
            access_jwt: Pre-issued access token (or set BSKY_ACCESS_JWT env var)
            service_url: PDS base URL (or set BSKY_SERVICE_URL env var)
            rate_limiter: Optional shared rate limiter
            timeout: Per-request timeout in seconds
        """
        self.handle = handle or os.environ.get("BSKY_HANDLE")
        self.app_password = app_password or os.environ.get("BSKY_APP_PASSWORD")
        self.access_jwt = access_jwt or os.environ.get("BSKY_ACCESS_JWT")
        self.service_url = (service_url or os.environ.get("BSKY_SERVICE_URL") or DEFAULT_SERVICE_URL).rstrip("/")
        self.timeout = timeout

        if not self.access_jwt and not (self.handle and self.app_password):
            logger.warning("No Bluesky credentials provided - adapter will fail on API calls")

        self.rate_limiter = rate_limiter or create_bsky_limiter()
        self._session = requests.Session()
        self._rate_limit_status: Dict[str, Any] = {
            "limit": None,
            "remaining": None,
            "reset_time": None,
            "last_updated": None,
        }

    @property
    def is_configured(self) -> bool:
        """Check if adapter has credentials to authenticate."""
        return bool(self.access_jwt or (self.handle and self.app_password))

    def get_rate_limit_status(self) -> dict:
        """Rate limit status from the last API response."""
        status = self._rate_limit_status.copy()
        if status["reset_time"]:
            reset_dt = datetime.fromtimestamp(status["reset_time"], tz=timezone.utc)
            status["seconds_until_reset"] = max(0, int((reset_dt - datetime.now(timezone.utc)).total_seconds()))
        else:
            status["seconds_until_reset"] = None
        return status

    def _update_rate_limit_status(self, response) -> None:
        headers = response.headers
        for key, header in (("limit", "ratelimit-limit"), ("remaining", "ratelimit-remaining"), ("reset_time", "ratelimit-reset")):
            value = _int_header(headers, header)
            if value is not None:
                self._rate_limit_status[key] = value
        self._rate_limit_status["last_updated"] = datetime.now(timezone.utc)

        remaining = self._rate_limit_status["remaining"]
        if remaining is not None and remaining <= 10:
            logger.warning(f"Bluesky rate limit nearly exhausted: {remaining} requests remaining")

    def _request(
        self,
        method: str,
        nsid: str,
        category: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        """Perform one XRPC call and map failures onto adapter exceptions."""
        headers = {"Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._ensure_session()}"

        self.rate_limiter.wait_if_needed(category)
        url = f"{self.service_url}/xrpc/{nsid}"

        try:
            start = time.time()
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
            latency_ms = (time.time() - start) * 1000
        except requests.exceptions.Timeout:
            raise BlueskyAPIError(f"{nsid} request timed out")
        except requests.exceptions.ConnectionError:
            raise BlueskyAPIError(f"Failed to connect to {self.service_url}")

        self._update_rate_limit_status(response)
        logger.debug(f"{nsid} -> {response.status_code} in {latency_ms:.0f}ms")

        if response.status_code == 401:
            if authenticated and self.handle and self.app_password:
                # Let the next call create a fresh session
                self.access_jwt = None
            raise BlueskyAuthenticationError(f"{nsid}: invalid or expired credentials")
        if response.status_code == 429:
            headers = response.headers
            raise BlueskyRateLimitError(
                "Bluesky rate limit exceeded",
                reset_time=_int_header(headers, "ratelimit-reset"),
                remaining=_int_header(headers, "ratelimit-remaining"),
                limit=_int_header(headers, "ratelimit-limit"),
            )
        if response.status_code >= 400:
            raise BlueskyAPIError(
                f"{nsid} failed: {response.status_code}",
                status_code=response.status_code,
                response_text=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise BlueskyAPIError(f"{nsid} returned invalid JSON: {e}")

    def _ensure_session(self) -> str:
        """Return an access token, creating a session from the app password if needed."""
        if self.access_jwt:
            return self.access_jwt
        if not (self.handle and self.app_password):
            raise BlueskyAuthenticationError(
                "Bluesky adapter not configured - set BSKY_HANDLE and BSKY_APP_PASSWORD"
            )

        data = self._request(
            "POST",
            "com.atproto.server.createSession",
            category="bsky_session",
            json_body={"identifier": self.handle, "password": self.app_password},
            authenticated=False,
        )
        token = data.get("accessJwt")
        if not token:
            raise BlueskyAuthenticationError("createSession returned no access token")

        self.access_jwt = token
        logger.info(f"Created Bluesky session for {self.handle}")
        return token

    def list_notifications(self, cursor: Optional[str] = None, limit: int = 50) -> NotificationPage:
        """
        Fetch one page of the notification feed.

        Notifications with an unknown reason or an unparseable shape are
        skipped and logged rather than failing the whole page.

        Args:
            cursor: Pagination cursor from the previous page
            limit: Page size (1-100)

        Returns:
            NotificationPage with parsed notifications and the next cursor

        Raises:
            BlueskyAuthenticationError: If not configured or credentials rejected
            BlueskyRateLimitError: If rate limit exceeded
            BlueskyAPIError: If API returns an error
        """
        params: Dict[str, Any] = {"limit": max(1, min(MAX_NOTIFICATIONS_PER_PAGE, limit))}
        if cursor:
            params["cursor"] = cursor

        data = self._request(
            "GET",
            "app.bsky.notification.listNotifications",
            category="bsky_notifications",
            params=params,
        )

        notifications = []
        for raw in data.get("notifications", []):
            if raw.get("reason") not in _KNOWN_REASONS:
                logger.warning(f"Skipping notification {raw.get('uri')} with unknown reason {raw.get('reason')!r}")
                continue
            try:
                notifications.append(Notification.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed notification {raw.get('uri')}: {e}")

        logger.info(f"Fetched {len(notifications)} notifications (cursor: {cursor or 'none'})")
        return NotificationPage(notifications=notifications, cursor=data.get("cursor"))

    def get_posts(self, uris: List[str]) -> List[Post]:
        """
        Hydrate up to 25 posts by URI.

        Posts the server cannot resolve (deleted, blocked) are simply absent
        from the result.

        Raises:
            ValueError: If more than 25 URIs are requested
            BlueskyAdapterError: On any API failure
        """
        if not uris:
            return []
        if len(uris) > MAX_POSTS_PER_REQUEST:
            raise ValueError(f"getPosts accepts at most {MAX_POSTS_PER_REQUEST} URIs, got {len(uris)}")

        data = self._request(
            "GET",
            "app.bsky.feed.getPosts",
            category="bsky_posts",
            params={"uris": list(uris)},
        )

        posts = []
        for raw in data.get("posts", []):
            try:
                posts.append(Post.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed post {raw.get('uri')}: {e}")

        logger.debug(f"Fetched {len(posts)}/{len(uris)} posts")
        return posts


__all__ = [
    "BlueskyAdapter",
    "BlueskyAdapterError",
    "BlueskyAuthenticationError",
    "BlueskyRateLimitError",
    "BlueskyAPIError",
    "Notification",
    "NotificationPage",
    "Post",
]
