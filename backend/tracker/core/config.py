"""Tracker service configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

TRACKER_DIR = Path(__file__).parent.parent
BACKEND_DIR = TRACKER_DIR.parent

DEFAULT_EVENTSUB_URL = "wss://eventsub.wss.twitch.tv/ws"


class TrackerSettings(BaseSettings):
    """Tracker settings, read from the environment and ``tracker/.env``."""

    model_config = SettingsConfigDict(
        env_file=TRACKER_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch application
    client_id: str = Field(..., description="Twitch OAuth Client ID")
    client_secret: str = Field(..., description="Twitch OAuth Client Secret")

    # Tracked identity
    broadcaster_login: str = Field(..., description="Login of the tracked broadcaster")
    broadcaster_access_token: str = Field(
        default="", description="Broadcaster user token (channel.update subscription)"
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")
    database_ssl: str = Field(default="", description="asyncpg ssl mode, e.g. 'require'")

    # EventSub
    eventsub_url: str = Field(default=DEFAULT_EVENTSUB_URL, description="EventSub WebSocket URL")
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    keepalive_grace_seconds: float = Field(default=5.0, ge=0)
    record_raw_events: bool = Field(default=True)
    suppress_duplicate_messages: bool = Field(default=False)

    # Reconciliation
    reconcile_interval_seconds: float = Field(default=300.0, gt=0)
    http_timeout_seconds: float = Field(default=10.0, gt=0)

    # Health server (Render-style PORT wins)
    health_port: int = Field(default=4344, validation_alias=AliasChoices("PORT", "health_port"))

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper


@lru_cache
def get_settings() -> TrackerSettings:
    """Get cached settings instance"""
    return TrackerSettings()  # type: ignore[call-arg]
