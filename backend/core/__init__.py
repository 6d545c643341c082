"""
Core services for the notifications backend.
- PostCache / NotificationStore: append-only session state
- RootDiscovery: batched post fetching with in-flight tracking
- NotificationSession: refresh cycle and memoized threads/timeline
- NotificationPoller: background refresh loop

Architecture:
- Raw notifications and posts are stored (not threads or events)
- Threads and timeline events are recomputed from snapshots on demand
- Fetch completions signal listeners instead of mutating derived state
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, Field

from adapter.bluesky import BlueskyAdapter, BlueskyAdapterError
from adapter.models import Notification, Post
from aggregator import (
    MAX_POSTS_PER_REQUEST,
    AggregatedEvent,
    ConversationThread,
    build_conversation_threads,
    build_timeline,
    chunk_uris,
    discover_missing_roots,
    filter_threads,
    notification_post_uris,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60
DEFAULT_MAX_NOTIFICATIONS = 10000
DEFAULT_MAX_DAYS = 28


class PostCache:
    """
    Append-only post store keyed by URI.

    A URI, once cached, is never evicted or replaced within a session epoch.
    Merges swap in a new dict, so a snapshot handed to readers never changes
    underneath them.
    """

    def __init__(self, posts: Optional[Iterable[Post]] = None):
        self._posts: Dict[str, Post] = {}
        self.version = 0
        if posts:
            self.merge(posts)

    def merge(self, posts: Iterable[Post]) -> int:
        """
        Union posts into the cache.

        Returns:
            Number of URIs that were not cached before
        """
        new_posts = {}
        for post in posts:
            if post.uri not in self._posts and post.uri not in new_posts:
                new_posts[post.uri] = post
        if not new_posts:
            return 0

        merged = dict(self._posts)
        merged.update(new_posts)
        self._posts = merged
        self.version += 1
        return len(new_posts)

    def snapshot(self) -> Mapping[str, Post]:
        """Read-only view of the cache as of now."""
        return MappingProxyType(self._posts)

    def get(self, uri: str) -> Optional[Post]:
        return self._posts.get(uri)

    def __contains__(self, uri: str) -> bool:
        return uri in self._posts

    def __len__(self) -> int:
        return len(self._posts)


class NotificationStore:
    """Union of all fetched notification pages, de-duplicated by URI, in feed order."""

    def __init__(self):
        self._notifications: List[Notification] = []
        self._uris: Set[str] = set()
        self.version = 0

    def add(self, notifications: Iterable[Notification], position: Optional[int] = None) -> int:
        """
        Add notifications (with deduplication).

        Args:
            notifications: One page of the feed, newest first
            position: Index to insert the new notifications at; appended if None.
                A refresh inserts its first page at 0 so newer notifications
                stay ahead of those fetched earlier.

        Returns:
            Number of new notifications added
        """
        new = []
        for notification in notifications:
            if notification.uri not in self._uris:
                new.append(notification)
                self._uris.add(notification.uri)
        if not new:
            return 0

        if position is None:
            self._notifications.extend(new)
        else:
            self._notifications[position:position] = new
        self.version += 1
        return len(new)

    def all(self) -> Tuple[Notification, ...]:
        return tuple(self._notifications)

    def __len__(self) -> int:
        return len(self._notifications)


class RootDiscovery:
    """
    Fetches missing posts in batches and merges them into the post cache.

    URIs are tracked while a request is in flight so the same post is never
    requested twice at once. A failed batch is logged and skipped; its URIs
    become eligible again on the next pass. URIs the server answered without
    (deleted or hidden posts) are remembered and not requested again in this
    epoch, which keeps repeated discovery passes converging.
    """

    def __init__(
        self,
        adapter: BlueskyAdapter,
        post_cache: PostCache,
        batch_size: int = MAX_POSTS_PER_REQUEST,
    ):
        self.adapter = adapter
        self.post_cache = post_cache
        self.batch_size = min(batch_size, MAX_POSTS_PER_REQUEST)
        self.in_flight: Set[str] = set()
        self.unavailable: Set[str] = set()
        self._listeners: List[Callable[[int], None]] = []

    def subscribe(self, listener: Callable[[int], None]) -> None:
        """Register a callback invoked with the number of posts added after each merge."""
        self._listeners.append(listener)

    def _notify(self, added: int) -> None:
        for listener in self._listeners:
            try:
                listener(added)
            except Exception as e:
                logger.error(f"Post cache listener failed: {e}")

    def pending(self, uris: Iterable[str]) -> List[str]:
        """URIs not cached, not in flight and not known to be unavailable, in order."""
        seen: Set[str] = set()
        result = []
        for uri in uris:
            if uri in seen or uri in self.post_cache or uri in self.in_flight or uri in self.unavailable:
                continue
            seen.add(uri)
            result.append(uri)
        return result

    async def fetch_posts(self, uris: Iterable[str]) -> int:
        """
        Fetch the given posts that are still missing.

        Returns:
            Number of posts added to the cache
        """
        to_fetch = self.pending(uris)
        if not to_fetch:
            return 0

        batches = list(chunk_uris(to_fetch, self.batch_size))
        self.in_flight.update(to_fetch)
        added = 0

        try:
            for index, batch in enumerate(batches, start=1):
                try:
                    posts = await asyncio.to_thread(self.adapter.get_posts, batch)
                except Exception as e:
                    logger.warning(f"Post batch {index}/{len(batches)} ({len(batch)} URIs) failed: {e}")
                    continue
                finally:
                    self.in_flight.difference_update(batch)

                returned = {post.uri for post in posts}
                self.unavailable.update(uri for uri in batch if uri not in returned)

                new_count = self.post_cache.merge(posts)
                added += new_count
                logger.debug(f"Post batch {index}/{len(batches)}: {len(posts)}/{len(batch)} returned, {new_count} new")
                if new_count:
                    self._notify(new_count)
        finally:
            # Batches never reached (cancellation) must stay eligible for a later pass
            self.in_flight.difference_update(to_fetch)

        logger.info(f"Fetched {added} posts for {len(to_fetch)} requested URIs in {len(batches)} batches")
        return added

    def missing_roots(self) -> Set[str]:
        return discover_missing_roots(self.post_cache.snapshot(), self.in_flight | self.unavailable)

    async def discover(self, max_passes: int = 5) -> int:
        """
        Repeatedly fetch thread roots referenced by cached posts.

        Each pass can reveal new roots (a fetched root may itself be a reply
        in a quoted thread), so passes continue until nothing new is missing.

        Returns:
            Number of root posts added
        """
        total = 0
        for pass_number in range(1, max_passes + 1):
            missing = self.missing_roots()
            if not missing:
                break

            logger.info(f"Root discovery pass {pass_number}: {len(missing)} roots missing")
            added = await self.fetch_posts(sorted(missing))
            total += added
            if added == 0:
                break
        return total


class RefreshSummary(BaseModel):
    """Outcome of one refresh cycle."""
    new_notifications: int = Field(default=0)
    posts_fetched: int = Field(default=0)
    roots_fetched: int = Field(default=0)
    total_notifications: int = Field(default=0)
    cached_posts: int = Field(default=0)
    refreshed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSession:
    """
    Holds one account's notification feed and post cache for a session epoch.

    Usage:
        session = NotificationSession(BlueskyAdapter())

        # Page the feed, hydrate posts, discover thread roots
        await session.refresh()

        # Derived views, recomputed only when inputs changed
        threads = session.get_threads(query="alice")
        events = session.get_timeline()
    """

    def __init__(
        self,
        adapter: BlueskyAdapter,
        max_notifications: int = DEFAULT_MAX_NOTIFICATIONS,
        max_days: int = DEFAULT_MAX_DAYS,
        discovery_max_passes: int = 5,
        page_size: int = 100,
    ):
        self.adapter = adapter
        self.max_notifications = max_notifications
        self.max_days = max_days
        self.discovery_max_passes = discovery_max_passes
        self.page_size = page_size

        self.notifications = NotificationStore()
        self.post_cache = PostCache()
        self.discovery = RootDiscovery(adapter, self.post_cache)
        self.discovery.subscribe(self._on_posts_merged)

        self._listeners: List[Callable[[], None]] = []
        self._threads_memo: Optional[Tuple[Tuple[int, int], List[ConversationThread]]] = None
        self._timeline_memo: Optional[Tuple[Tuple[int, int], List[AggregatedEvent]]] = None

        # Provisional roots that were later re-keyed to their resolved root
        self._root_assignments: Dict[str, str] = {}
        self.root_migrations: Dict[str, str] = {}

        self.last_refresh: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.refresh_count = 0

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked whenever threads/timeline need recomputing."""
        self._listeners.append(listener)

    def _signal_update(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def _on_posts_merged(self, added: int) -> None:
        logger.debug(f"{added} posts merged, cache now holds {len(self.post_cache)}")
        self._signal_update()

    @property
    def _input_versions(self) -> Tuple[int, int]:
        return (self.notifications.version, self.post_cache.version)

    async def fetch_notifications(self) -> int:
        """
        Page the notification feed into the store.

        Stops when the cursor runs out, a page brings nothing new, the
        notification cap is reached, or the oldest notification on a page
        is older than the day limit.

        Returns:
            Number of new notifications
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.max_days)
        cursor: Optional[str] = None
        added = 0
        pages = 0

        while True:
            page = await asyncio.to_thread(self.adapter.list_notifications, cursor, self.page_size)
            pages += 1
            # New notifications precede everything stored by earlier refreshes
            page_added = self.notifications.add(page.notifications, position=added)
            added += page_added

            if not page.cursor or not page.notifications or page_added == 0:
                break
            if len(self.notifications) >= self.max_notifications:
                logger.info(f"Reached notification cap ({self.max_notifications})")
                break
            if page.notifications[-1].indexed_at < cutoff:
                logger.info(f"Reached {self.max_days}-day limit after {pages} pages")
                break
            cursor = page.cursor

        logger.info(f"Fetched {pages} notification pages: +{added} new, {len(self.notifications)} total")
        if added:
            self._signal_update()
        return added

    async def refresh(self) -> RefreshSummary:
        """
        Run one full refresh cycle: feed, notification posts, thread roots.

        Raises:
            BlueskyAdapterError: If the notification feed cannot be fetched
        """
        try:
            new_notifications = await self.fetch_notifications()
        except BlueskyAdapterError as e:
            self.last_error = str(e)
            logger.error(f"Notification refresh failed: {e}")
            raise

        posts_fetched = await self.discovery.fetch_posts(notification_post_uris(self.notifications.all()))
        roots_fetched = await self.discovery.discover(self.discovery_max_passes)

        self.last_refresh = datetime.now(timezone.utc)
        self.last_error = None
        self.refresh_count += 1

        # Recompute eagerly so root migrations are recorded per refresh
        self.get_threads()

        return RefreshSummary(
            new_notifications=new_notifications,
            posts_fetched=posts_fetched,
            roots_fetched=roots_fetched,
            total_notifications=len(self.notifications),
            cached_posts=len(self.post_cache),
            refreshed_at=self.last_refresh,
        )

    def _track_root_migrations(self, threads: List[ConversationThread]) -> None:
        assignments = {reply.uri: thread.root_uri for thread in threads for reply in thread.replies}
        current_roots = {thread.root_uri for thread in threads}

        for uri, old_root in self._root_assignments.items():
            new_root = assignments.get(uri)
            if new_root is None or new_root == old_root or old_root in current_roots:
                continue
            if self.root_migrations.get(old_root) != new_root:
                logger.info(f"Conversation {old_root} re-keyed to resolved root {new_root}")
            self.root_migrations[old_root] = new_root

        # Keep earlier migrations pointing at the newest identity
        for old_root, target in list(self.root_migrations.items()):
            if target not in current_roots and target in self.root_migrations:
                self.root_migrations[old_root] = self.resolve_conversation(target)

        self._root_assignments = assignments

    def resolve_conversation(self, root_uri: str) -> str:
        """Follow recorded re-keys from a previously displayed root to its current one."""
        visited = {root_uri}
        current = root_uri
        while current in self.root_migrations:
            nxt = self.root_migrations[current]
            if nxt in visited:
                break
            visited.add(nxt)
            current = nxt
        return current

    def get_threads(self, query: Optional[str] = None) -> List[ConversationThread]:
        """Conversation threads, optionally filtered by a search query."""
        versions = self._input_versions
        if self._threads_memo is None or self._threads_memo[0] != versions:
            threads = build_conversation_threads(self.notifications.all(), self.post_cache.snapshot())
            self._track_root_migrations(threads)
            self._threads_memo = (versions, threads)
        return filter_threads(self._threads_memo[1], query, self.post_cache.snapshot())

    def get_timeline(self) -> List[AggregatedEvent]:
        """Aggregated timeline events, newest first."""
        versions = self._input_versions
        if self._timeline_memo is None or self._timeline_memo[0] != versions:
            events = build_timeline(self.notifications.all(), self.post_cache.snapshot())
            self._timeline_memo = (versions, events)
        return self._timeline_memo[1]

    def status(self) -> dict:
        return {
            "notifications": len(self.notifications),
            "cached_posts": len(self.post_cache),
            "in_flight": len(self.discovery.in_flight),
            "unavailable_posts": len(self.discovery.unavailable),
            "missing_roots": len(self.discovery.missing_roots()),
            "root_migrations": dict(self.root_migrations),
            "refresh_count": self.refresh_count,
            "last_refresh": self.last_refresh,
            "last_error": self.last_error,
        }


class NotificationPoller:
    """
    Background service that refreshes a NotificationSession periodically.

    Usage:
        poller = NotificationPoller(session)
        await poller.start()  # Refreshes every 60s by default
        await poller.stop()
    """

    def __init__(self, session: NotificationSession, poll_interval: int = DEFAULT_POLL_INTERVAL):
        self.session = session
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the background polling task."""
        if self._running:
            logger.warning("Poller already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"NotificationPoller started with {self.poll_interval}s interval")

    async def stop(self):
        """Stop the background polling task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("NotificationPoller stopped")

    async def _poll_loop(self):
        while self._running:
            try:
                await self.session.refresh()
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")

            await asyncio.sleep(self.poll_interval)

    async def poll_now(self) -> RefreshSummary:
        """Manually trigger a refresh."""
        return await self.session.refresh()


__all__ = [
    "NotificationPoller",
    "NotificationSession",
    "NotificationStore",
    "PostCache",
    "RefreshSummary",
    "RootDiscovery",
]
