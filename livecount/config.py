"""
Configuration Management

All settings are loaded from environment variables (or a .env file) through
Pydantic Settings, so values are type-checked once at startup and can be
overridden per test by constructing a new Settings instance.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application Settings

    Variable names match field names (case-insensitive), e.g. TWITCH_CLIENT_ID.
    """

    log_level: str = "INFO"
    log_categories: Optional[str] = None  # Comma-separated categories (auth,stream_event_sub,snapshot,system). If None, show all logs.
    port: int = 8000
    host: str = "0.0.0.0"

    # Twitch application identity
    twitch_client_id: Optional[str] = None
    twitch_client_secret: Optional[str] = None
    twitch_redirect_uri: Optional[str] = None
    twitch_refresh_token: Optional[str] = None  # Previously issued token, skips the browser flow
    twitch_scopes: List[str] = ["channel:read:subscriptions", "moderator:read:followers"]

    # EventSub WebSocket Configuration
    eventsub_ws_url: str = "wss://eventsub.wss.twitch.tv/ws"
    eventsub_keepalive_timeout_seconds: int = 60  # Twitch accepts 10-600
    eventsub_reconnect_delay: float = 5  # First reconnect delay in seconds
    eventsub_max_reconnect_delay: float = 60  # Backoff cap in seconds
    eventsub_reconnect_jitter: float = 0.25  # Fraction of the delay added at random
    eventsub_max_reconnect_attempts: Optional[int] = None  # None retries forever

    # Deduplication
    dedup_capacity: int = 10000
    dedup_window_seconds: Optional[float] = 3600

    # Overlay goals
    follower_goal: int = 0
    subscriber_goal: int = 0

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra env vars without validation errors


# Loaded once when the module is imported
settings = Settings()
