"""Shared test fakes and fixtures.

Hey future me - nothing here touches the network or real timers. FakeClock only moves when a test
calls advance(), which is what lets us assert "reconnect after exactly 5000 ms" without waiting
five real seconds. Timers fire synchronously inside advance(); anything they spawn (reconnect
attempts) runs on the loop, so call `await drain()` afterwards.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pandorabox.application.services.sessions.session_state_machine import SessionStateMachine
from pandorabox.domain.entities import TokenPair, UserProfile
from pandorabox.domain.exceptions import (
    ChannelConnectError,
    InvalidCredentialsError,
    NetworkError,
    TokenExpiredError,
    TokenInvalidError,
)
from pandorabox.domain.ports import (
    AuthGrant,
    IAuthBackend,
    IClock,
    IRealtimeConnection,
    IRealtimeConnector,
    ITimerHandle,
    ITokenStore,
)
from pandorabox.infrastructure.realtime.channel import RealtimeChannel, TokenProvider

START_TIME = 1_700_000_000.0
WS_URL = "ws://dashboard.test/ws"

# =============================================================================
# Clock
# =============================================================================


class FakeTimer(ITimerHandle):
    def __init__(self, due_ms: int, seq: int, callback: Callable[[], None]) -> None:
        self.due_ms = due_ms
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock(IClock):
    """Manually advanced clock with integer-millisecond timers."""

    def __init__(self, start: float = START_TIME) -> None:
        self._now_ms = round(start * 1000)
        self._timers: list[FakeTimer] = []
        self._seq = 0

    def time(self) -> float:
        return self._now_ms / 1000

    def call_later(self, delay: float, callback: Callable[[], None]) -> ITimerHandle:
        self._seq += 1
        timer = FakeTimer(self._now_ms + round(delay * 1000), self._seq, callback)
        self._timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order (ties in scheduling order)."""
        target = self._now_ms + round(seconds * 1000)
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due_ms <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due_ms, t.seq))
            self._timers.remove(timer)
            self._now_ms = timer.due_ms
            timer.callback()
        self._now_ms = target
        self._timers = [t for t in self._timers if not t.cancelled]

    @property
    def pending(self) -> list[FakeTimer]:
        """Timers that are scheduled and not cancelled."""
        return [t for t in self._timers if not t.cancelled]


# =============================================================================
# Realtime transport
# =============================================================================


class FakeConnection(IRealtimeConnection):
    """In-memory WebSocket: push() delivers frames, drop() simulates the server going away."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def receive(self) -> str | None:
        return await self._inbox.get()

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("connection closed")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, frame: str | dict[str, Any]) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    @property
    def sent_messages(self) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in self.sent]


class FakeConnector(IRealtimeConnector):
    """Records every connect attempt; fails the next `failures` attempts.

    With hold_handshakes set, every attempt waits on its own Event in `handshakes` (one per
    attempt, in dial order) until the test sets it - that's a slow server handshake.
    """

    def __init__(self) -> None:
        self.attempts: list[str] = []
        self.connections: list[FakeConnection] = []
        self.failures = 0
        self.hold_handshakes = False
        self.handshakes: list[asyncio.Event] = []

    async def connect(self, url: str) -> IRealtimeConnection:
        self.attempts.append(url)
        if self.hold_handshakes:
            handshake = asyncio.Event()
            self.handshakes.append(handshake)
            await handshake.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ChannelConnectError("WebSocket connection failed: connection refused")
        connection = FakeConnection(url)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


# =============================================================================
# Token store + auth backend
# =============================================================================


class InMemoryTokenStore(ITokenStore):
    def __init__(self) -> None:
        self.pair: TokenPair | None = None
        self.saved: list[TokenPair] = []
        self.load_calls = 0
        self.clear_calls = 0

    def save(self, pair: TokenPair) -> None:
        self.pair = pair
        self.saved.append(pair)

    def load(self) -> TokenPair | None:
        self.load_calls += 1
        return self.pair

    def clear(self) -> None:
        self.clear_calls += 1
        self.pair = None


class FakeAuthBackend(IAuthBackend):
    """Auth server double with real token bookkeeping.

    Issued access tokens verify until expired/revoked, refresh tokens work exactly once.
    block(name) returns an Event that holds calls of that method until set.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._counter = 0
        self.accounts: dict[str, tuple[str, UserProfile]] = {}
        self.valid_access: dict[str, UserProfile] = {}
        self.valid_refresh: dict[str, UserProfile] = {}
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.network_down = False
        self.fail_verify = False

    def add_account(self, user: UserProfile, password: str) -> None:
        self.accounts[user.username] = (password, user)

    def issue(self, user: UserProfile, remember_me: bool = False) -> TokenPair:
        self._counter += 1
        lifetime = timedelta(days=90) if remember_me else timedelta(hours=24)
        pair = TokenPair(
            access_token=f"access-{self._counter}",
            refresh_token=f"refresh-{self._counter}",
            expires_at=datetime.fromtimestamp(self._clock.time(), UTC) + lifetime,
            remember_me=remember_me,
        )
        self.valid_access[pair.access_token] = user
        self.valid_refresh[pair.refresh_token] = user
        return pair

    def block(self, name: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[name] = gate
        return gate

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if self.network_down:
            raise NetworkError()

    async def login(self, username: str, password: str, remember_me: bool = False) -> AuthGrant:
        await self._enter("login")
        account = self.accounts.get(username)
        if account is None or account[0] != password:
            raise InvalidCredentialsError()
        user = account[1]
        return AuthGrant(user=user, tokens=self.issue(user, remember_me))

    async def verify(self, access_token: str) -> UserProfile:
        await self._enter("verify")
        user = self.valid_access.get(access_token)
        if user is None or self.fail_verify:
            raise TokenExpiredError()
        return user

    async def refresh(self, refresh_token: str, remember_me: bool = False) -> TokenPair:
        await self._enter("refresh")
        user = self.valid_refresh.pop(refresh_token, None)
        if user is None:
            raise TokenInvalidError("Invalid refresh token")
        return self.issue(user, remember_me)

    async def logout(self, access_token: str) -> None:
        await self._enter("logout")
        self.valid_access.pop(access_token, None)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def alice() -> UserProfile:
    return UserProfile(id="u-1", username="alice", email="alice@example.com", role="user")


@pytest.fixture
def auth_backend(clock: FakeClock, alice: UserProfile) -> FakeAuthBackend:
    backend = FakeAuthBackend(clock)
    backend.add_account(alice, "secret")
    return backend


@pytest.fixture
def channel_factory(
    connector: FakeConnector, clock: FakeClock
) -> Callable[[TokenProvider], RealtimeChannel]:
    # Heartbeat off - long clock jumps (token expiry tests) would otherwise fire thousands of pings
    def factory(token_provider: TokenProvider) -> RealtimeChannel:
        return RealtimeChannel(
            WS_URL,
            connector,
            clock,
            token_provider=token_provider,
            reconnect_delay=5.0,
            heartbeat_interval=0,
        )

    return factory


@pytest.fixture
def machine(
    token_store: InMemoryTokenStore,
    auth_backend: FakeAuthBackend,
    channel_factory: Callable[[TokenProvider], RealtimeChannel],
    clock: FakeClock,
) -> SessionStateMachine:
    return SessionStateMachine(token_store, auth_backend, channel_factory, clock)


@pytest.fixture
def drain() -> Callable[[], Awaitable[None]]:
    """Let spawned tasks (reader loops, reconnect attempts, closes) run to their next wait."""

    async def _drain(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _drain
