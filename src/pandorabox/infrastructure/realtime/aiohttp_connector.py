"""aiohttp-backed WebSocket transport for RealtimeChannel."""

import asyncio
import logging

import aiohttp

from pandorabox.domain.exceptions import ChannelConnectError
from pandorabox.domain.ports import IRealtimeConnection, IRealtimeConnector

logger = logging.getLogger(__name__)

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


class AiohttpRealtimeConnection(IRealtimeConnection):
    """One aiohttp WebSocket plus the ClientSession that owns it."""

    def __init__(
        self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse
    ) -> None:
        self._session = session
        self._ws = ws

    # Hey future me, aiohttp answers server pings itself (autoping=True), so PING/PONG frames never
    # show up here. Anything close-ish (CLOSE, CLOSED, ERROR) maps to None, which the channel
    # treats as "connection gone".
    async def receive(self) -> str | None:
        """Next text frame, None once the socket is closed."""
        while True:
            msg = await self._ws.receive()
            if msg.type is aiohttp.WSMsgType.TEXT:
                return str(msg.data)
            if msg.type is aiohttp.WSMsgType.BINARY:
                return bytes(msg.data).decode("utf-8", errors="replace")
            if msg.type in _CLOSED_TYPES:
                if msg.type is aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", self._ws.exception())
                else:
                    logger.debug("WebSocket closed by server (code=%s)", self._ws.close_code)
                return None

    async def send_text(self, data: str) -> None:
        """Send one text frame."""
        await self._ws.send_str(data)

    async def close(self) -> None:
        """Close the socket and its session."""
        try:
            if not self._ws.closed:
                await self._ws.close(code=aiohttp.WSCloseCode.OK, message=b"Client disconnect")
        finally:
            await self._session.close()


class AiohttpRealtimeConnector(IRealtimeConnector):
    """Opens WebSocket connections with aiohttp."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        """Initialize connector.

        Args:
            connect_timeout: Seconds to wait for the handshake before giving up
        """
        self._connect_timeout = connect_timeout

    # Listen, each connection gets its OWN ClientSession. Connections live for hours and get torn
    # down on every drop; sharing one session would tie its lifetime to whichever socket closed
    # last. The session is closed together with the socket in close().
    async def connect(self, url: str) -> IRealtimeConnection:
        """Open a WebSocket to ``url``.

        Raises:
            ChannelConnectError: On handshake failure, HTTP error or timeout
        """
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(session.ws_connect(url), timeout=self._connect_timeout)
        except (aiohttp.ClientError, TimeoutError) as exc:
            await session.close()
            reason = "timed out" if isinstance(exc, TimeoutError) else str(exc) or type(exc).__name__
            raise ChannelConnectError(f"WebSocket connection failed: {reason}") from exc
        return AiohttpRealtimeConnection(session, ws)
