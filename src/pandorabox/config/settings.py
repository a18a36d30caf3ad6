"""Application settings loaded from environment variables.

Hey future me - every setting can be overridden with a PANDORA_ prefixed env var.
Nested groups use a double underscore, e.g. PANDORA_REALTIME__RECONNECT_DELAY_SECONDS=2.
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthSettings(BaseModel):
    """Auth backend (login/verify/refresh/logout REST endpoints)."""

    base_url: str = Field(
        default="http://localhost:3001/api/v1/auth",
        description="Base URL of the auth REST endpoints",
    )
    request_timeout: float = Field(default=30.0, gt=0)
    # Same window the old JWT manager used: refresh 5 minutes before expiry.
    refresh_threshold_seconds: float = Field(default=300.0, ge=0)


class RealtimeSettings(BaseModel):
    """WebSocket channel carrying download progress and other server events."""

    url: str = Field(default="ws://localhost:3001/ws")
    # Fixed-interval reconnect. Deliberately NOT exponential - see RealtimeChannel.
    reconnect_delay_seconds: float = Field(default=5.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, ge=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)


class StorageSettings(BaseModel):
    """Where the token pair and the metadata cache live on disk."""

    token_database_url: str = Field(default="sqlite:///./data/pandora.db")
    cache_database_url: str = Field(default="sqlite+aiosqlite:///./data/pandora_cache.db")
    cache_purge_interval_seconds: float = Field(default=3600.0, gt=0)


class ObservabilitySettings(BaseModel):
    """Logging output options."""

    log_json_format: bool = False


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_prefix="PANDORA_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "pandorabox"
    log_level: str = "INFO"

    auth: AuthSettings = Field(default_factory=AuthSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


# Cached so every caller shares one Settings instance. Tests that tweak env vars
# must call get_settings.cache_clear() first!
@lru_cache
def get_settings() -> Settings:
    """Get the cached application settings."""
    return Settings()
