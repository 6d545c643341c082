"""
Client-side rate limiter for Bluesky XRPC calls.

Each request category (notification listing, post hydration, session
creation) gets its own window so a burst of post fetches during root
discovery cannot starve the notification poller.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Literal

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for a specific rate limit."""
    requests_per_window: int
    window_seconds: int
    strategy: Literal["sliding_window", "token_bucket"] = "sliding_window"


class RateLimiter:
    """
    Blocking rate limiter keyed by request category.

    Supports a sliding window (at most N requests in any window) and a token
    bucket (steady refill, bursts up to N). Safe to share between threads,
    since adapters are driven through asyncio.to_thread.
    """

    def __init__(self):
        self.configs: Dict[str, RateLimitConfig] = {}
        self.sliding_windows: Dict[str, List[float]] = defaultdict(list)
        self.token_buckets: Dict[str, float] = {}
        self.last_refill: Dict[str, float] = {}
        self._lock = threading.Lock()

    def configure_limit(self, category: str, config: RateLimitConfig) -> None:
        """Configure rate limiting for a category."""
        with self._lock:
            self.configs[category] = config
            if config.strategy == "token_bucket":
                self.token_buckets[category] = float(config.requests_per_window)
                self.last_refill[category] = time.time()

        logger.info(
            f"Configured rate limit for {category}: "
            f"{config.requests_per_window} req/{config.window_seconds}s ({config.strategy})"
        )

    def wait_if_needed(self, category: str) -> float:
        """
        Block until a request in ``category`` is allowed, then record it.

        Returns:
            Seconds spent waiting
        """
        config = self.configs.get(category)
        if config is None:
            logger.warning(f"No rate limit configured for category '{category}', allowing request")
            return 0.0

        with self._lock:
            if config.strategy == "token_bucket":
                wait_time = self._reserve_token(category, config)
            else:
                wait_time = self._reserve_slot(category, config)

        if wait_time > 0:
            logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds")
            time.sleep(wait_time)
        return wait_time

    def _reserve_slot(self, category: str, config: RateLimitConfig) -> float:
        now = time.time()
        window = self.sliding_windows[category]
        window[:] = [t for t in window if now - t < config.window_seconds]

        wait_time = 0.0
        if len(window) >= config.requests_per_window:
            wait_time = max(0.0, config.window_seconds - (now - window[0]))
            window.pop(0)

        window.append(now + wait_time)
        return wait_time

    def _reserve_token(self, category: str, config: RateLimitConfig) -> float:
        now = time.time()
        refill_rate = config.requests_per_window / config.window_seconds
        elapsed = now - self.last_refill.get(category, now)
        tokens = min(
            float(config.requests_per_window),
            self.token_buckets.get(category, float(config.requests_per_window)) + elapsed * refill_rate,
        )
        self.last_refill[category] = now

        wait_time = 0.0 if tokens >= 1 else (1 - tokens) / refill_rate
        self.token_buckets[category] = tokens - 1
        return wait_time

    def get_remaining_requests(self, category: str) -> int:
        """Estimated requests still allowed right now for a category."""
        config = self.configs.get(category)
        if config is None:
            return -1

        with self._lock:
            if config.strategy == "token_bucket":
                return max(0, int(self.token_buckets.get(category, config.requests_per_window)))
            now = time.time()
            recent = [t for t in self.sliding_windows[category] if now - t < config.window_seconds]
            return max(0, config.requests_per_window - len(recent))


def create_bsky_limiter() -> RateLimiter:
    """Rate limiter preconfigured below the AppView's published limits."""
    limiter = RateLimiter()
    limiter.configure_limit("bsky_notifications", RateLimitConfig(
        requests_per_window=60,
        window_seconds=60,
        strategy="sliding_window",
    ))
    limiter.configure_limit("bsky_posts", RateLimitConfig(
        requests_per_window=10,
        window_seconds=1,
        strategy="token_bucket",
    ))
    limiter.configure_limit("bsky_session", RateLimitConfig(
        requests_per_window=30,
        window_seconds=300,
        strategy="sliding_window",
    ))
    return limiter


__all__ = ["RateLimitConfig", "RateLimiter", "create_bsky_limiter"]
