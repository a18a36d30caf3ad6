"""Tests for RealtimeChannel - state machine, fan-out and fixed-interval reconnect."""

import asyncio

import pytest

from pandorabox.domain.entities import ChannelState
from pandorabox.domain.exceptions import ChannelNotOpenError, ConfigurationError
from pandorabox.infrastructure.realtime.channel import RealtimeChannel
from pandorabox.infrastructure.realtime.messages import ChannelEvent


@pytest.fixture
def channel(connector, clock) -> RealtimeChannel:
    return RealtimeChannel(
        "ws://dashboard.test/ws",
        connector,
        clock,
        token_provider=lambda: "tok",
        reconnect_delay=5.0,
        heartbeat_interval=30.0,
    )


@pytest.fixture
def statuses(channel):
    received = []
    channel.subscribe_status(received.append)
    return received


class TestConnect:
    """Opening the channel."""

    @pytest.mark.asyncio
    async def test_connect_opens_with_token(self, channel, connector, statuses):
        await channel.connect()

        assert channel.state is ChannelState.OPEN
        assert channel.retry_count == 0
        assert connector.attempts == ["ws://dashboard.test/ws?token=tok"]
        assert [s.state for s in statuses] == [ChannelState.CONNECTING, ChannelState.OPEN]
        assert statuses[-1].is_connected

    @pytest.mark.asyncio
    async def test_connect_is_noop_while_open(self, channel, connector):
        await channel.connect()
        await channel.connect()

        assert len(connector.attempts) == 1

    @pytest.mark.asyncio
    async def test_existing_query_is_kept_and_token_replaced(self, connector, clock):
        channel = RealtimeChannel(
            "wss://dash.test/ws?client=web&token=stale",
            connector,
            clock,
            token_provider=lambda: "fresh",
        )

        await channel.connect()

        assert connector.attempts == ["wss://dash.test/ws?client=web&token=fresh"]

    @pytest.mark.asyncio
    async def test_no_token_leaves_url_alone(self, connector, clock):
        channel = RealtimeChannel("ws://dash.test/ws", connector, clock, token_provider=lambda: None)

        await channel.connect()

        assert connector.attempts == ["ws://dash.test/ws"]

    def test_rejects_non_websocket_url(self, connector, clock):
        with pytest.raises(ConfigurationError):
            RealtimeChannel("http://dash.test/ws", connector, clock)

    @pytest.mark.asyncio
    async def test_connect_failure_is_reported_not_raised(
        self, channel, connector, clock, statuses
    ):
        connector.failures = 1

        await channel.connect()

        assert channel.state is ChannelState.RECONNECTING
        assert channel.retry_count == 1
        assert any(s.error and "connection refused" in s.error for s in statuses)
        assert len(clock.pending) == 1


class TestDispatch:
    """Inbound frames fan out to subscribers."""

    @pytest.mark.asyncio
    async def test_handlers_called_in_subscription_order(self, channel, connector, drain):
        calls = []
        channel.subscribe(lambda e: calls.append(("first", e.type)))
        channel.subscribe(lambda e: calls.append(("second", e.type)))
        await channel.connect()

        connector.last.push({"type": "download_progress", "payload": {"progress": 42}})
        await drain()

        assert calls == [("first", "download_progress"), ("second", "download_progress")]

    @pytest.mark.asyncio
    async def test_event_type_filter(self, channel, connector, drain):
        progress = []
        channel.subscribe(progress.append, "download_progress")
        await channel.connect()

        connector.last.push({"type": "container_status", "payload": {}})
        connector.last.push({"type": "download_progress", "payload": {"progress": 1}})
        await drain()

        assert [e.type for e in progress] == ["download_progress"]

    @pytest.mark.asyncio
    async def test_data_alias_is_accepted(self, channel, connector, drain):
        events: list[ChannelEvent] = []
        channel.subscribe(events.append)
        await channel.connect()

        connector.last.push({"type": "download", "event": "status_update", "data": {"id": 7}})
        await drain()

        assert events[0].payload == {"id": 7}
        assert events[0].event == "status_update"

    @pytest.mark.asyncio
    async def test_raising_handler_does_not_stop_others(self, channel, connector, drain):
        received = []

        def broken(_event):
            raise ValueError("handler bug")

        channel.subscribe(broken)
        channel.subscribe(received.append)
        await channel.connect()

        connector.last.push({"type": "ping", "payload": None})
        connector.last.push({"type": "pong", "payload": None})
        await drain()

        assert [e.type for e in received] == ["ping", "pong"]
        assert channel.is_open

    @pytest.mark.asyncio
    async def test_unsubscribe(self, channel, connector, drain):
        received = []
        unsubscribe = channel.subscribe(received.append)
        await channel.connect()

        unsubscribe()
        unsubscribe()
        connector.last.push({"type": "download_progress", "payload": {}})
        await drain()

        assert received == []

    @pytest.mark.asyncio
    async def test_malformed_frame_is_reported_and_skipped(
        self, channel, connector, drain, statuses
    ):
        received = []
        channel.subscribe(received.append)
        await channel.connect()

        connector.last.push("{not json")
        connector.last.push('["a", "list"]')
        connector.last.push({"type": "download_progress", "payload": {}})
        await drain()

        assert [e.type for e in received] == ["download_progress"]
        errors = [s for s in statuses if s.error]
        assert len(errors) == 2
        assert channel.is_open


class TestSend:
    """Outbound messages."""

    @pytest.mark.asyncio
    async def test_send_while_closed_raises(self, channel):
        with pytest.raises(ChannelNotOpenError):
            await channel.send({"type": "subscribe", "payload": {"channel": "downloads"}})

    @pytest.mark.asyncio
    async def test_send_while_open(self, channel, connector):
        await channel.connect()

        await channel.send({"type": "subscribe", "payload": {"channel": "downloads"}})
        await channel.send(ChannelEvent(type="custom"))

        assert connector.last.sent_messages == [
            {"type": "subscribe", "payload": {"channel": "downloads"}},
            {"type": "custom"},
        ]

    @pytest.mark.asyncio
    async def test_send_while_reconnecting_raises(self, channel, connector, drain):
        await channel.connect()
        connector.last.drop()
        await drain()

        with pytest.raises(ChannelNotOpenError):
            await channel.send({"type": "ping"})


class TestReconnect:
    """Fixed 5 s reconnect, forever, until disconnect()."""

    @pytest.mark.asyncio
    async def test_drop_moves_to_reconnecting(self, channel, connector, drain, statuses):
        await channel.connect()

        connector.last.drop()
        await drain()

        assert channel.state is ChannelState.RECONNECTING
        assert channel.retry_count == 1
        assert statuses[-1].state is ChannelState.RECONNECTING

    @pytest.mark.asyncio
    async def test_reconnect_fires_after_exactly_5000ms(self, channel, connector, clock, drain):
        await channel.connect()
        connector.last.drop()
        await drain()

        clock.advance(4.999)
        await drain()
        assert len(connector.attempts) == 1
        assert channel.state is ChannelState.RECONNECTING

        clock.advance(0.001)
        await drain()
        assert len(connector.attempts) == 2
        assert channel.state is ChannelState.OPEN
        assert channel.retry_count == 0

    @pytest.mark.asyncio
    async def test_failed_attempts_retry_at_fixed_interval(self, channel, connector, clock, drain):
        connector.failures = 3
        await channel.connect()
        assert channel.retry_count == 1

        for expected_attempts in (2, 3):
            clock.advance(4.999)
            await drain()
            assert len(connector.attempts) == expected_attempts - 1
            clock.advance(0.001)
            await drain()
            assert len(connector.attempts) == expected_attempts
            assert channel.retry_count == expected_attempts
            assert channel.state is ChannelState.RECONNECTING

        clock.advance(5.0)
        await drain()
        assert len(connector.attempts) == 4
        assert channel.state is ChannelState.OPEN
        assert channel.retry_count == 0

    @pytest.mark.asyncio
    async def test_only_one_reconnect_timer_pending(self, channel, connector, clock, drain):
        await channel.connect()
        connector.last.drop()
        await drain()

        assert len(clock.pending) == 1

    @pytest.mark.asyncio
    async def test_disconnect_while_reconnecting_cancels_timer(
        self, channel, connector, clock, drain
    ):
        await channel.connect()
        connector.last.drop()
        await drain()
        assert channel.state is ChannelState.RECONNECTING

        channel.disconnect()
        assert clock.pending == []

        clock.advance(60)
        await drain()
        assert len(connector.attempts) == 1
        assert channel.state is ChannelState.CLOSED
        assert channel.retry_count == 0

    @pytest.mark.asyncio
    async def test_connect_while_reconnecting_skips_wait(self, channel, connector, clock, drain):
        await channel.connect()
        connector.last.drop()
        await drain()

        await channel.connect()

        assert channel.state is ChannelState.OPEN
        assert len(connector.attempts) == 2
        # Only the heartbeat of the new connection is left
        assert len(clock.pending) == 1

    @pytest.mark.asyncio
    async def test_topics_resubscribed_after_reconnect(self, channel, connector, clock, drain):
        await channel.join("downloads")
        await channel.connect()
        first = connector.last
        first.drop()
        await drain()

        clock.advance(5.0)
        await drain()

        expected = {"type": "subscribe", "payload": {"channel": "downloads"}}
        assert first.sent_messages == [expected]
        assert connector.last is not first
        assert connector.last.sent_messages == [expected]


class TestDisconnect:
    """Explicit close."""

    @pytest.mark.asyncio
    async def test_disconnect_closes_transport_without_reconnect(
        self, channel, connector, clock, drain
    ):
        await channel.connect()
        connection = connector.last

        channel.disconnect()
        await drain()

        assert channel.state is ChannelState.CLOSED
        assert connection.closed
        assert clock.pending == []
        clock.advance(60)
        await drain()
        assert len(connector.attempts) == 1

    @pytest.mark.asyncio
    async def test_aclose_waits_for_transport(self, channel, connector):
        await channel.connect()

        await channel.aclose()

        assert connector.last.closed
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_handshake_from_before_disconnect_is_not_adopted(
        self, connector, clock, drain
    ):
        """Logout + login during a slow handshake must end up on the NEW user's socket."""
        token = {"value": "old-user"}
        channel = RealtimeChannel(
            "ws://dashboard.test/ws",
            connector,
            clock,
            token_provider=lambda: token["value"],
            heartbeat_interval=0,
        )
        connector.hold_handshakes = True

        stale_dial = asyncio.create_task(channel.connect())
        await drain()
        channel.disconnect()
        token["value"] = "new-user"
        current_dial = asyncio.create_task(channel.connect())
        await drain()
        assert connector.attempts == [
            "ws://dashboard.test/ws?token=old-user",
            "ws://dashboard.test/ws?token=new-user",
        ]

        connector.handshakes[0].set()
        await stale_dial
        stale = connector.last
        assert stale.closed
        assert channel.state is ChannelState.CONNECTING

        connector.handshakes[1].set()
        await current_dial
        current = connector.last
        assert current is not stale
        assert current.url.endswith("token=new-user")
        assert not current.closed
        assert channel.is_open

    @pytest.mark.asyncio
    async def test_failed_handshake_from_before_disconnect_is_ignored(
        self, channel, connector, clock, drain
    ):
        connector.hold_handshakes = True
        stale_dial = asyncio.create_task(channel.connect())
        await drain()
        channel.disconnect()
        current_dial = asyncio.create_task(channel.connect())
        await drain()

        connector.failures = 1
        connector.handshakes[0].set()
        await stale_dial

        assert channel.state is ChannelState.CONNECTING
        assert channel.retry_count == 0
        assert clock.pending == []

        connector.handshakes[1].set()
        await current_dial
        assert channel.is_open

    def test_disconnect_when_closed_is_harmless(self, channel, statuses):
        channel.disconnect()

        assert channel.state is ChannelState.CLOSED
        assert statuses == []


class TestHeartbeatAndTopics:
    """Keep-alive pings and server-side topic subscriptions."""

    @pytest.mark.asyncio
    async def test_ping_every_30_seconds(self, channel, connector, clock, drain):
        await channel.connect()

        clock.advance(29.999)
        await drain()
        assert connector.last.sent_messages == []

        clock.advance(0.001)
        await drain()
        clock.advance(30)
        await drain()
        assert connector.last.sent_messages == [{"type": "ping"}, {"type": "ping"}]

    @pytest.mark.asyncio
    async def test_join_and_leave_while_open(self, channel, connector):
        await channel.connect()

        await channel.join("downloads")
        await channel.join("downloads")
        await channel.leave("downloads")
        await channel.leave("downloads")

        assert connector.last.sent_messages == [
            {"type": "subscribe", "payload": {"channel": "downloads"}},
            {"type": "unsubscribe", "payload": {"channel": "downloads"}},
        ]
        assert channel.topics == []

    @pytest.mark.asyncio
    async def test_join_while_closed_is_sent_on_connect(self, channel, connector):
        await channel.join("downloads")
        await channel.join("containers")
        assert channel.topics == ["downloads", "containers"]

        await channel.connect()

        assert [m["payload"]["channel"] for m in connector.last.sent_messages] == [
            "downloads",
            "containers",
        ]
