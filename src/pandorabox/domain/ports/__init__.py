"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from pandorabox.domain.entities import TokenPair, UserProfile


# Hey future me, IClock is what makes the reconnect delay and token expiry TESTABLE. Production
# uses SystemClock (time.time + loop.call_later); tests use a fake clock that only moves when told
# to. Never call time.time() or asyncio.sleep() for timing decisions inside the core - go through
# the clock or the 5000ms reconnect test turns into a real 5 second wait.
class ITimerHandle(ABC):
    """Handle of a scheduled callback."""

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the callback if it has not run yet."""
        pass


class IClock(ABC):
    """Source of time and delayed callbacks."""

    @abstractmethod
    def time(self) -> float:
        """Current time as epoch seconds."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> ITimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        pass


class ITokenStore(ABC):
    """Durable storage for the one token pair.

    All methods are synchronous. No validation here - that's the auth backend's job.
    """

    @abstractmethod
    def save(self, pair: TokenPair) -> None:
        """Replace the stored pair entirely."""
        pass

    @abstractmethod
    def load(self) -> TokenPair | None:
        """Load the stored pair, None if never authenticated (or cleared)."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored pair."""
        pass


@dataclass(frozen=True)
class AuthGrant:
    """What a successful login hands back: who logged in and their tokens."""

    user: UserProfile
    tokens: TokenPair


# Listen up, every method here RAISES on failure (InvalidCredentialsError, TokenExpiredError,
# TokenInvalidError, NetworkError - all AuthenticationError subclasses). SessionStateMachine is
# the one place that catches them and turns them into states/results.
class IAuthBackend(ABC):
    """Login/verify/refresh/logout calls against the auth service."""

    @abstractmethod
    async def login(self, username: str, password: str, remember_me: bool = False) -> AuthGrant:
        """Exchange credentials for a user profile and token pair."""
        pass

    @abstractmethod
    async def verify(self, access_token: str) -> UserProfile:
        """Check an access token and return the user it belongs to."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str, remember_me: bool = False) -> TokenPair:
        """Trade a refresh token for a new pair."""
        pass

    @abstractmethod
    async def logout(self, access_token: str) -> None:
        """Invalidate the server-side session."""
        pass


class IRealtimeConnection(ABC):
    """One established WebSocket connection."""

    @abstractmethod
    async def receive(self) -> str | None:
        """Wait for the next text frame. None means the connection is gone."""
        pass

    @abstractmethod
    async def send_text(self, data: str) -> None:
        """Send one text frame."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection (idempotent)."""
        pass


class IRealtimeConnector(ABC):
    """Opens realtime connections. Raises ChannelConnectError on failure."""

    @abstractmethod
    async def connect(self, url: str) -> IRealtimeConnection:
        """Open a connection to ``url``."""
        pass


__all__ = [
    "AuthGrant",
    "IAuthBackend",
    "IClock",
    "IRealtimeConnection",
    "IRealtimeConnector",
    "ITimerHandle",
    "ITokenStore",
]
