"""Domain entities for the session core."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Authentication state of the process-wide session."""

    UNAUTHENTICATED = "unauthenticated"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    ERROR = "error"  # init() itself broke - NOT the same as "not logged in"!


@dataclass(frozen=True)
class UserProfile:
    """The authenticated user as reported by the auth backend."""

    id: str
    username: str
    email: str | None = None
    role: str = "user"
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_admin(self) -> bool:
        """Check if user has the admin role."""
        return self.role == "admin"


# Hey future me, Session is FROZEN on purpose! SessionStateMachine never mutates a snapshot in
# place, it builds a new one with with_changes() and swaps it in. Subscribers that hold on to an
# old snapshot keep seeing the transition they were notified about, never a half-applied one.
@dataclass(frozen=True)
class Session:
    """Snapshot of the authentication state."""

    state: SessionState = SessionState.UNAUTHENTICATED
    user: UserProfile | None = None
    error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        """Check if the session is usable for proxied calls (REFRESHING counts)."""
        return self.state in (SessionState.AUTHENTICATED, SessionState.REFRESHING)

    def with_changes(self, **changes: Any) -> "Session":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh credential pair.

    expires_at is the ACCESS token expiry, always timezone-aware UTC.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    remember_me: bool = False

    def __post_init__(self) -> None:
        # SQLite hands back naive datetimes - treat them as UTC so comparisons never blow up
        if self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=UTC))

    def is_expired(self, now: float) -> bool:
        """Check if the access token is expired at epoch time ``now``."""
        return now >= self.expires_at.timestamp()

    def expires_within(self, seconds: float, now: float) -> bool:
        """Check if the access token expires in the next ``seconds`` seconds."""
        return now + seconds >= self.expires_at.timestamp()


@dataclass(frozen=True)
class LoginResult:
    """Outcome of SessionStateMachine.login().

    Auth failures are returned here, never raised to the UI.
    """

    success: bool
    user: UserProfile | None = None
    error: str | None = None


class ChannelState(str, Enum):
    """Connection state of the realtime channel."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ChannelStatus:
    """What connection-status observers receive on every change or channel error."""

    state: ChannelState
    retry_count: int = 0
    error: str | None = None

    @property
    def is_connected(self) -> bool:
        """Check if the channel is open."""
        return self.state is ChannelState.OPEN


__all__ = [
    "ChannelState",
    "ChannelStatus",
    "LoginResult",
    "Session",
    "SessionState",
    "TokenPair",
    "UserProfile",
]
