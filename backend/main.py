"""
Bluesky Notifications Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.bluesky import BlueskyAdapter
from adapter.rate_limiter import create_bsky_limiter
from api import router, set_dependencies
from config import Settings
from core import NotificationPoller, NotificationSession

# Load environment variables
load_dotenv()

settings = Settings.from_env()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global services (initialized on startup)
session: NotificationSession = None
poller: NotificationPoller = None


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Logs latency of API requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        latency_ms = (time.time() - start_time) * 1000

        log = logger.warning if response.status_code >= 500 else logger.debug
        log(f"{request.method} {request.url.path} -> {response.status_code} ({latency_ms:.1f}ms)")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    global session, poller

    logger.info("Starting notifications backend...")

    adapter = BlueskyAdapter(
        handle=settings.bsky_handle,
        app_password=settings.bsky_app_password,
        access_jwt=settings.bsky_access_jwt,
        service_url=settings.bsky_service_url,
        rate_limiter=create_bsky_limiter(),
    )

    if adapter.is_configured:
        logger.info("✓ Bluesky adapter configured")
    else:
        logger.warning("⚠ Bluesky adapter not configured - set BSKY_HANDLE and BSKY_APP_PASSWORD")

    session = NotificationSession(
        adapter,
        max_notifications=settings.max_notifications,
        max_days=settings.max_notification_days,
        discovery_max_passes=settings.discovery_max_passes,
    )
    poller = NotificationPoller(session, poll_interval=settings.poll_interval_seconds)

    set_dependencies(session, poller)

    if settings.start_poller and adapter.is_configured:
        await poller.start()
        logger.info(f"✓ NotificationPoller started (interval: {settings.poll_interval_seconds}s)")
    else:
        logger.info("ℹ Background polling disabled; use POST /api/v1/notifications/refresh")

    logger.info("Notifications backend ready!")

    yield  # Application runs here

    logger.info("Shutting down notifications backend...")
    if poller:
        await poller.stop()
    logger.info("Goodbye!")


# Create FastAPI app
app = FastAPI(
    title="Bluesky Notifications API",
    description="Conversation threads and activity timeline built from the Bluesky notification feed",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestTimingMiddleware)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/")
async def root():
    return {"name": "Bluesky Notifications API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
