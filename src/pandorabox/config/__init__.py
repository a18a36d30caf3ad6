"""Configuration module for Pandora Box."""

from .settings import (
    AuthSettings,
    ObservabilitySettings,
    RealtimeSettings,
    Settings,
    StorageSettings,
    get_settings,
)

__all__ = [
    "AuthSettings",
    "ObservabilitySettings",
    "RealtimeSettings",
    "Settings",
    "StorageSettings",
    "get_settings",
]
