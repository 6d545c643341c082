"""
End-to-end API tests with mock data.

Tests the full flow: API → NotificationSession → BlueskyAdapter (mocked) → Response
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from adapter.bluesky import BlueskyAPIError
from adapter.models import NotificationPage
from api import set_dependencies
from core import NotificationPoller, NotificationSession
from helpers import make_notification, make_post, post_uri
from main import app

ROOT = post_uri("root", handle="me")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_adapter():
    """Create a mock Bluesky adapter that returns test data."""
    adapter = Mock()
    adapter.is_configured = True
    adapter.list_notifications = Mock(return_value=NotificationPage())
    adapter.get_posts = Mock(return_value=[])
    adapter.get_rate_limit_status = Mock(return_value={
        "limit": 3000,
        "remaining": 2999,
        "reset_time": None,
        "seconds_until_reset": None,
    })
    return adapter


@pytest.fixture
def session_with_data(mock_adapter):
    """Session holding a small conversation, a like burst and a follow."""
    session = NotificationSession(mock_adapter)
    now = datetime.now(timezone.utc)

    replies = [
        make_notification(post_uri("r1", handle="carol"), reason="reply", handle="carol",
                          at=now - timedelta(minutes=5), reason_subject=ROOT),
        make_notification(post_uri("r2", handle="dave"), reason="reply", handle="dave",
                          at=now - timedelta(minutes=3), reason_subject=ROOT, is_read=True),
    ]
    likes = [
        make_notification(post_uri(f"like{i}", handle=h), reason="like", handle=h,
                          at=now - timedelta(minutes=10 + i), reason_subject=ROOT)
        for i, h in enumerate(["erin", "frank", "grace"])
    ]
    follow = make_notification("at://did:plc:heidi/app.bsky.graph.follow/1", reason="follow",
                               handle="heidi", at=now - timedelta(minutes=30))
    session.notifications.add(replies + likes + [follow])
    session.post_cache.merge([
        make_post(ROOT, text="Sourdough thoughts", handle="me"),
        make_post(replies[0].uri, text="Use rye", root=ROOT, parent=ROOT, handle="carol"),
        make_post(replies[1].uri, text="Agreed", root=ROOT, parent=replies[0].uri, handle="dave"),
    ])
    return session


@pytest.fixture
def client(session_with_data):
    """Create test client with mocked services."""
    set_dependencies(session_with_data, NotificationPoller(session_with_data))
    yield TestClient(app)
    set_dependencies(None, None)


# ============================================================================
# Endpoints
# ============================================================================

class TestAPIEndpoints:
    """Test API endpoints with mocked services."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "Bluesky Notifications API"

    def test_health_endpoint(self, client):
        """Test health check endpoint."""
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["notifications"] == 6
        assert data["cached_posts"] == 3

    def test_list_threads(self, client):
        response = client.get("/api/v1/notifications/threads")

        assert response.status_code == 200
        threads = response.json()
        assert len(threads) == 1
        thread = threads[0]
        assert thread["root_uri"] == ROOT
        assert thread["root_text"] == "Sourdough thoughts"
        assert thread["participants"] == ["carol", "dave"]
        assert thread["total_replies"] == 2
        assert thread["unread_count"] == 1
        assert thread["is_group"] is False
        assert thread["latest_reply"]["text"] == "Agreed"
        assert [r["text"] for r in thread["replies"]] == ["Use rye", "Agreed"]

    def test_search_threads(self, client):
        assert len(client.get("/api/v1/notifications/threads", params={"q": "RYE"}).json()) == 1
        assert client.get("/api/v1/notifications/threads", params={"q": "nothing"}).json() == []

    def test_threads_limit_validation(self, client):
        response = client.get("/api/v1/notifications/threads", params={"limit": 0})

        assert response.status_code == 422

    def test_timeline(self, client):
        response = client.get("/api/v1/notifications/timeline")

        assert response.status_code == 200
        events = response.json()
        by_type = {}
        for event in events:
            by_type.setdefault(event["aggregation_type"], []).append(event)

        burst = by_type["post-burst"][0]
        assert burst["post_uri"] == ROOT
        assert burst["post_text"] == "Sourdough thoughts"
        assert burst["burst_intensity"] == "low"
        assert burst["actors"] == ["erin", "frank", "grace"]
        assert len(by_type["post"]) == 2
        assert by_type["follow"][0]["actors"] == ["heidi"]
        assert sum(e["count"] for e in events) == 6

        times = [e["time"] for e in events]
        assert times == sorted(times, reverse=True)

    def test_timeline_limit(self, client):
        response = client.get("/api/v1/notifications/timeline", params={"limit": 1})

        assert len(response.json()) == 1

    def test_timeline_by_day(self, client):
        response = client.get("/api/v1/notifications/timeline/days")

        assert response.status_code == 200
        days = response.json()
        assert days[0]["label"] in ("Today", "Yesterday")
        assert sum(len(d["events"]) for d in days) == len(client.get("/api/v1/notifications/timeline").json())

    def test_status(self, client, mock_adapter):
        response = client.get("/api/v1/notifications/status")

        assert response.status_code == 200
        data = response.json()
        assert data["notifications"] == 6
        assert data["cached_posts"] == 3
        assert data["missing_roots"] == 0
        assert data["rate_limit"]["remaining"] == 2999
        mock_adapter.get_rate_limit_status.assert_called_once()

    def test_refresh(self, client, mock_adapter):
        mock_adapter.list_notifications.return_value = NotificationPage(notifications=[
            make_notification(post_uri("m1"), reason="mention", handle="ivan"),
        ])

        response = client.post("/api/v1/notifications/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["new_notifications"] == 1
        assert data["total_notifications"] == 7

    def test_refresh_upstream_failure(self, client, mock_adapter):
        mock_adapter.list_notifications.side_effect = BlueskyAPIError("Bluesky API error: 500", status_code=500)

        response = client.post("/api/v1/notifications/refresh")

        assert response.status_code == 502
        assert "Bluesky request failed" in response.json()["detail"]


class TestUninitialized:
    """Endpoints before the services are wired."""

    def test_returns_503(self):
        set_dependencies(None, None)
        client = TestClient(app)

        assert client.get("/api/v1/health").status_code == 503
        assert client.get("/api/v1/notifications/threads").status_code == 503
        assert client.post("/api/v1/notifications/refresh").status_code == 503
