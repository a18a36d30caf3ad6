"""Realtime channel - WebSocket events from the server (download progress etc.)."""

from pandorabox.infrastructure.realtime.aiohttp_connector import (
    AiohttpRealtimeConnection,
    AiohttpRealtimeConnector,
)
from pandorabox.infrastructure.realtime.channel import RealtimeChannel
from pandorabox.infrastructure.realtime.messages import (
    DOWNLOAD_PROGRESS,
    ChannelEvent,
    DownloadProgress,
    parse_event,
)

__all__ = [
    "DOWNLOAD_PROGRESS",
    "AiohttpRealtimeConnection",
    "AiohttpRealtimeConnector",
    "ChannelEvent",
    "DownloadProgress",
    "RealtimeChannel",
    "parse_event",
]
