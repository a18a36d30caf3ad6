"""Realtime channel - the one persistent WebSocket carrying server events.

Hey future me - this replaces the old window.wsClient global. SessionStateMachine OWNS the single
instance: it connects after authentication and disconnects on logout. Pages never create their own
channel, they subscribe() to the session's channel and keep the returned unsubscribe handle.

State machine:
    CLOSED -> CONNECTING -> OPEN
    OPEN -> CLOSED                    (disconnect())
    OPEN -> RECONNECTING              (server went away)
    CONNECTING -> RECONNECTING        (connect attempt failed)
    RECONNECTING -> CONNECTING        (after reconnect_delay, forever, until disconnect())

Reconnect policy is a FIXED delay with NO cap on attempts. The old client gave up after 5
exponentially growing attempts and told the user to refresh the page - a home server that reboots
overnight must come back on its own, so we keep knocking every 5 seconds instead.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pandorabox.domain.entities import ChannelState, ChannelStatus
from pandorabox.domain.exceptions import (
    ChannelConnectError,
    ChannelMessageParseError,
    ChannelNotOpenError,
    ConfigurationError,
)
from pandorabox.domain.ports import (
    IClock,
    IRealtimeConnection,
    IRealtimeConnector,
    ITimerHandle,
)
from pandorabox.infrastructure.realtime.messages import (
    PING,
    SUBSCRIBE,
    UNSUBSCRIBE,
    ChannelEvent,
    parse_event,
)

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_HEARTBEAT_INTERVAL = 30.0

EventHandler = Callable[[ChannelEvent], Any]
StatusHandler = Callable[[ChannelStatus], Any]
TokenProvider = Callable[[], str | None]


class RealtimeChannel:
    """Self-healing WebSocket channel with subscriber fan-out."""

    def __init__(
        self,
        url: str,
        connector: IRealtimeConnector,
        clock: IClock,
        token_provider: TokenProvider | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        """Initialize the channel (does NOT connect).

        Args:
            url: WebSocket endpoint
            connector: Opens the underlying connections
            clock: Schedules reconnect and heartbeat timers
            token_provider: Returns the current access token, appended as ?token=
            reconnect_delay: Seconds between reconnect attempts
            heartbeat_interval: Seconds between pings while open (0 disables)

        Raises:
            ConfigurationError: If ``url`` is not a ws:// or wss:// URL
        """
        if urlsplit(url).scheme not in ("ws", "wss"):
            raise ConfigurationError(f"Realtime URL must start with ws:// or wss://, got {url!r}")
        self._url = url
        self._connector = connector
        self._clock = clock
        self._token_provider = token_provider
        self._reconnect_delay = reconnect_delay
        self._heartbeat_interval = heartbeat_interval

        self._state = ChannelState.CLOSED
        self._retry_count = 0
        # Bumped by every dial and every disconnect(). A handshake that completes under an older
        # number belongs to a connection nobody wants anymore (possibly with the previous token).
        self._attempt = 0
        self._connection: IRealtimeConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_timer: ITimerHandle | None = None
        self._heartbeat_timer: ITimerHandle | None = None
        # Strong refs for fire-and-forget tasks, otherwise the loop may GC them mid-flight
        self._background: set[asyncio.Task[Any]] = set()

        self._handlers: list[tuple[EventHandler, str | None]] = []
        self._status_handlers: list[StatusHandler] = []
        # dict as ordered set - joined topics are re-sent in join order after reconnect
        self._topics: dict[str, None] = {}

    # =========================================================================
    # READ API
    # =========================================================================

    @property
    def state(self) -> ChannelState:
        """Current connection state."""
        return self._state

    @property
    def retry_count(self) -> int:
        """Reconnect attempts since the last successful open."""
        return self._retry_count

    @property
    def status(self) -> ChannelStatus:
        """Snapshot for connection-status indicators."""
        return ChannelStatus(state=self._state, retry_count=self._retry_count)

    @property
    def is_open(self) -> bool:
        """Check if the channel is open."""
        return self._state is ChannelState.OPEN

    @property
    def topics(self) -> list[str]:
        """Topics joined via join(), in join order."""
        return list(self._topics)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def connect(self) -> None:
        """Open the channel.

        No-op while CONNECTING or OPEN. Never raises on connection failure - failures are logged,
        reported to status subscribers and retried after the reconnect delay.
        """
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            return
        # Calling connect() while RECONNECTING skips the wait
        self._cancel_reconnect()
        await self._open()

    # Listen up, disconnect() is SYNCHRONOUS on purpose. Logout must be able to close the channel
    # without awaiting anything, so the channel can never survive the authenticated ->
    # unauthenticated transition. The transport close itself is fire-and-forget; use aclose()
    # when you need to wait for it (shutdown).
    def disconnect(self) -> None:
        """Close the channel and stop all reconnect attempts."""
        was = self._state
        self._attempt += 1
        self._cancel_reconnect()
        self._cancel_heartbeat()
        connection, self._connection = self._connection, None
        reader, self._reader_task = self._reader_task, None
        self._retry_count = 0
        self._set_state(ChannelState.CLOSED)

        if reader is not None and not reader.done():
            reader.cancel()
        if connection is not None:
            self._spawn(connection.close())
        if was is not ChannelState.CLOSED:
            logger.info("Realtime channel disconnected")

    async def aclose(self) -> None:
        """Disconnect and wait until the transport is closed."""
        self.disconnect()
        pending = list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(
        self, handler: EventHandler, event_type: str | None = None
    ) -> Callable[[], None]:
        """Register an event handler.

        Args:
            handler: Called with every ChannelEvent (or only those of ``event_type``)
            event_type: Optional type filter

        Returns:
            Function that removes the handler again (safe to call twice)
        """
        entry = (handler, event_type)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def subscribe_status(self, handler: StatusHandler) -> Callable[[], None]:
        """Register a connection-status observer.

        Returns:
            Function that removes the observer again
        """
        self._status_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._status_handlers:
                self._status_handlers.remove(handler)

        return unsubscribe

    async def join(self, topic: str) -> None:
        """Subscribe to a server-side topic; remembered across reconnects."""
        if topic in self._topics:
            return
        self._topics[topic] = None
        if self.is_open:
            await self.send({"type": SUBSCRIBE, "payload": {"channel": topic}})

    async def leave(self, topic: str) -> None:
        """Unsubscribe from a server-side topic."""
        if topic not in self._topics:
            return
        del self._topics[topic]
        if self.is_open:
            await self.send({"type": UNSUBSCRIBE, "payload": {"channel": topic}})

    # =========================================================================
    # SENDING
    # =========================================================================

    async def send(self, message: ChannelEvent | dict[str, Any]) -> None:
        """Send a message to the server.

        Raises:
            ChannelNotOpenError: If the channel is not OPEN
        """
        connection = self._connection
        if self._state is not ChannelState.OPEN or connection is None:
            raise ChannelNotOpenError()
        event = message if isinstance(message, ChannelEvent) else ChannelEvent.model_validate(message)
        await connection.send_text(event.to_wire())

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _open(self) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._set_state(ChannelState.CONNECTING)
        try:
            connection = await self._connector.connect(self._build_url())
        except ChannelConnectError as exc:
            if attempt != self._attempt:
                # disconnect() (and maybe a newer dial) happened meanwhile - not ours to retry
                return
            logger.warning(
                "Realtime connect failed (attempt %d): %s", self._retry_count + 1, exc
            )
            self._notify_status(error=exc.message)
            self._schedule_reconnect()
            return

        if attempt != self._attempt:
            # Superseded while the handshake was in flight. Even if we're CONNECTING again, that
            # is a newer dial's state - don't adopt this one and don't leak it either.
            await connection.close()
            return

        self._connection = connection
        self._retry_count = 0
        self._set_state(ChannelState.OPEN)
        logger.info("Realtime channel open")

        self._reader_task = asyncio.create_task(self._read_loop(connection))
        self._schedule_heartbeat()
        for topic in list(self._topics):
            await self._send_quietly({"type": SUBSCRIBE, "payload": {"channel": topic}})

    async def _read_loop(self, connection: IRealtimeConnection) -> None:
        while True:
            try:
                raw = await connection.receive()
            except Exception as exc:
                # Transport blew up mid-read - same as a drop, the reconnect loop takes over
                logger.warning("Realtime receive failed: %s", exc, exc_info=True)
                break
            if raw is None:
                break
            self._dispatch(raw)

        # Only an OPEN channel whose connection is still current can "drop". After disconnect()
        # the connection was already swapped out and this is just the reader winding down.
        if self._connection is connection and self._state is ChannelState.OPEN:
            self._handle_unexpected_close()

    def _dispatch(self, raw: str) -> None:
        try:
            event = parse_event(raw)
        except ChannelMessageParseError as exc:
            logger.warning("Dropping realtime message: %s", exc.message)
            self._notify_status(error=exc.message)
            return

        # Iterate over a copy - handlers may unsubscribe themselves while being called
        for handler, event_type in list(self._handlers):
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception:
                # One broken page must not starve the others or kill the channel
                logger.exception("Realtime handler %r failed for %s event", handler, event.type)

    def _handle_unexpected_close(self) -> None:
        logger.warning(
            "Realtime channel closed unexpectedly, reconnecting in %.1fs",
            self._reconnect_delay,
        )
        self._cancel_heartbeat()
        self._connection = None
        self._reader_task = None
        self._schedule_reconnect()

    # Hey future me, EXACTLY one pending reconnect timer at any time. Any old timer is cancelled
    # before a new one is armed, and disconnect() cancels whatever is pending.
    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        self._retry_count += 1
        self._set_state(ChannelState.RECONNECTING)
        self._reconnect_timer = self._clock.call_later(
            self._reconnect_delay, self._on_reconnect_timer
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._state is not ChannelState.RECONNECTING:
            return
        logger.info("Realtime reconnect attempt %d", self._retry_count)
        self._spawn(self._open())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _schedule_heartbeat(self) -> None:
        if self._heartbeat_interval <= 0:
            return
        self._heartbeat_timer = self._clock.call_later(
            self._heartbeat_interval, self._on_heartbeat
        )

    def _on_heartbeat(self) -> None:
        self._heartbeat_timer = None
        if self._state is not ChannelState.OPEN:
            return
        self._spawn(self._send_quietly({"type": PING}))
        self._schedule_heartbeat()

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None

    async def _send_quietly(self, message: dict[str, Any]) -> None:
        # Pings and resubscribes race with drops; the reader notices the drop on its own
        try:
            await self.send(message)
        except ChannelNotOpenError:
            logger.debug("Skipped %s, channel not open", message.get("type"))

    def _build_url(self) -> str:
        token = self._token_provider() if self._token_provider else None
        if not token:
            return self._url
        parts = urlsplit(self._url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
        query.append(("token", token))
        return urlunsplit(parts._replace(query=urlencode(query)))

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.debug("Realtime channel %s -> %s", self._state.value, state.value)
        self._state = state
        self._notify_status()

    def _notify_status(self, error: str | None = None) -> None:
        status = ChannelStatus(state=self._state, retry_count=self._retry_count, error=error)
        for handler in list(self._status_handlers):
            try:
                handler(status)
            except Exception:
                logger.exception("Realtime status handler %r failed", handler)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
