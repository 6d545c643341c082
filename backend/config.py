"""Environment-driven settings for the notifications backend."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings, overridable through environment variables."""

    # Bluesky
    bsky_service_url: str = Field(default="https://bsky.social")
    bsky_handle: Optional[str] = Field(default=None)
    bsky_app_password: Optional[str] = Field(default=None)
    bsky_access_jwt: Optional[str] = Field(default=None)

    # Feed limits
    poll_interval_seconds: int = Field(default=60)
    max_notifications: int = Field(default=10000)
    max_notification_days: int = Field(default=28)
    discovery_max_passes: int = Field(default=5)

    # Runtime
    start_poller: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        env_mapping = {
            "BSKY_SERVICE_URL": ("bsky_service_url", str),
            "BSKY_HANDLE": ("bsky_handle", str),
            "BSKY_APP_PASSWORD": ("bsky_app_password", str),
            "BSKY_ACCESS_JWT": ("bsky_access_jwt", str),
            "POLL_INTERVAL_SECONDS": ("poll_interval_seconds", int),
            "MAX_NOTIFICATIONS": ("max_notifications", int),
            "MAX_NOTIFICATION_DAYS": ("max_notification_days", int),
            "DISCOVERY_MAX_PASSES": ("discovery_max_passes", int),
            "START_POLLER": ("start_poller", _env_bool),
            "LOG_LEVEL": ("log_level", str),
        }

        values = {}
        for env_var, (field_name, convert) in env_mapping.items():
            raw = os.environ.get(env_var)
            if raw:
                values[field_name] = convert(raw)
        values.update(overrides)
        return cls(**values)


__all__ = ["Settings"]
