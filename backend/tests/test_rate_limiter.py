"""Unit tests for the client-side rate limiter."""

from unittest.mock import patch

from adapter.rate_limiter import RateLimitConfig, RateLimiter, create_bsky_limiter


class TestSlidingWindow:
    """Test the sliding window strategy."""

    def test_allows_requests_within_limit(self):
        limiter = RateLimiter()
        limiter.configure_limit("test", RateLimitConfig(requests_per_window=3, window_seconds=60))

        with patch("adapter.rate_limiter.time.sleep") as sleep:
            waits = [limiter.wait_if_needed("test") for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]
        sleep.assert_not_called()
        assert limiter.get_remaining_requests("test") == 0

    def test_waits_when_window_full(self):
        limiter = RateLimiter()
        limiter.configure_limit("test", RateLimitConfig(requests_per_window=2, window_seconds=60))

        with patch("adapter.rate_limiter.time.sleep") as sleep:
            limiter.wait_if_needed("test")
            limiter.wait_if_needed("test")
            wait = limiter.wait_if_needed("test")

        assert 0 < wait <= 60
        sleep.assert_called_once_with(wait)


class TestTokenBucket:
    """Test the token bucket strategy."""

    def test_burst_then_wait(self):
        limiter = RateLimiter()
        limiter.configure_limit("posts", RateLimitConfig(
            requests_per_window=2, window_seconds=1, strategy="token_bucket",
        ))

        with patch("adapter.rate_limiter.time.sleep") as sleep:
            assert limiter.wait_if_needed("posts") == 0.0
            assert limiter.wait_if_needed("posts") == 0.0
            wait = limiter.wait_if_needed("posts")

        assert 0 < wait <= 0.5
        sleep.assert_called_once()


class TestUnconfigured:
    """Categories without a configured limit."""

    def test_unknown_category_is_allowed(self):
        limiter = RateLimiter()

        assert limiter.wait_if_needed("unknown") == 0.0
        assert limiter.get_remaining_requests("unknown") == -1


def test_bsky_limiter_categories():
    limiter = create_bsky_limiter()

    assert set(limiter.configs) == {"bsky_notifications", "bsky_posts", "bsky_session"}
    assert limiter.configs["bsky_posts"].strategy == "token_bucket"
    assert limiter.get_remaining_requests("bsky_notifications") == 60
