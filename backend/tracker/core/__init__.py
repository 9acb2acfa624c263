"""Core modules for the broadcast tracker."""

from .config import BACKEND_DIR, DEFAULT_EVENTSUB_URL, TRACKER_DIR, TrackerSettings, get_settings
from .health_server import HealthCheckServer
from .logging import setup_logging
from .subscriptions import SubscriptionSpec, get_channel_subscriptions

__all__ = [
    # Settings
    "TrackerSettings",
    "get_settings",
    # Path Constants
    "TRACKER_DIR",
    "BACKEND_DIR",
    "DEFAULT_EVENTSUB_URL",
    # Setup functions
    "setup_logging",
    # Services
    "HealthCheckServer",
    # Twitch specific
    "SubscriptionSpec",
    "get_channel_subscriptions",
]
