"""Tests for session domain entities and exceptions."""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import pytest

from pandorabox.domain.entities import (
    ChannelState,
    ChannelStatus,
    Session,
    SessionState,
    TokenPair,
    UserProfile,
)
from pandorabox.domain.exceptions import (
    AuthenticationError,
    ChannelNotOpenError,
    DomainException,
    InvalidCredentialsError,
    NetworkError,
    TokenExpiredError,
    TokenInvalidError,
)

EXPIRES = datetime(2030, 1, 1, tzinfo=UTC)


class TestSession:
    """Test Session snapshots."""

    def test_default_is_unauthenticated(self) -> None:
        session = Session()

        assert session.state is SessionState.UNAUTHENTICATED
        assert session.user is None
        assert session.error is None
        assert not session.is_authenticated

    @pytest.mark.parametrize(
        "state,expected",
        [
            (SessionState.UNAUTHENTICATED, False),
            (SessionState.INITIALIZING, False),
            (SessionState.AUTHENTICATED, True),
            (SessionState.REFRESHING, True),
            (SessionState.ERROR, False),
        ],
    )
    def test_is_authenticated(self, state, expected) -> None:
        assert Session(state=state).is_authenticated is expected

    def test_with_changes_returns_new_snapshot(self) -> None:
        before = Session()
        after = before.with_changes(state=SessionState.ERROR, error="boom")

        assert before.state is SessionState.UNAUTHENTICATED
        assert after == Session(state=SessionState.ERROR, error="boom")

    def test_snapshot_is_frozen(self) -> None:
        with pytest.raises(FrozenInstanceError):
            Session().state = SessionState.AUTHENTICATED  # type: ignore[misc]


class TestUserProfile:
    """Test UserProfile."""

    def test_is_admin(self) -> None:
        assert UserProfile(id="1", username="root", role="admin").is_admin
        assert not UserProfile(id="2", username="alice").is_admin

    def test_extra_is_not_part_of_equality(self) -> None:
        plain = UserProfile(id="1", username="alice")
        decorated = UserProfile(id="1", username="alice", extra={"theme": "dark"})

        assert plain == decorated


class TestTokenPair:
    """Test TokenPair expiry helpers."""

    def test_naive_expiry_is_treated_as_utc(self) -> None:
        pair = TokenPair("a", "r", datetime(2030, 1, 1))

        assert pair.expires_at == EXPIRES
        assert pair.expires_at.tzinfo is UTC

    def test_is_expired_boundary(self) -> None:
        pair = TokenPair("a", "r", EXPIRES)
        deadline = EXPIRES.timestamp()

        assert not pair.is_expired(deadline - 0.001)
        assert pair.is_expired(deadline)

    def test_expires_within(self) -> None:
        pair = TokenPair("a", "r", EXPIRES)
        deadline = EXPIRES.timestamp()

        assert not pair.expires_within(300, deadline - 301)
        assert pair.expires_within(300, deadline - 300)
        assert pair.expires_within(300, deadline + 10)

    def test_remember_me_defaults_off(self) -> None:
        assert TokenPair("a", "r", EXPIRES).remember_me is False


class TestChannelStatus:
    """Test ChannelStatus."""

    def test_is_connected_only_when_open(self) -> None:
        assert ChannelStatus(ChannelState.OPEN).is_connected
        for state in (ChannelState.CLOSED, ChannelState.CONNECTING, ChannelState.RECONNECTING):
            assert not ChannelStatus(state).is_connected


class TestExceptions:
    """Test exception hierarchy and default messages."""

    @pytest.mark.parametrize(
        "exc_type,message",
        [
            (InvalidCredentialsError, "Invalid credentials"),
            (TokenExpiredError, "Token expired"),
            (TokenInvalidError, "Token invalid"),
            (NetworkError, "Network error. Please try again."),
        ],
    )
    def test_auth_errors(self, exc_type, message) -> None:
        exc = exc_type()

        assert isinstance(exc, AuthenticationError)
        assert isinstance(exc, DomainException)
        assert exc.message == message
        assert str(exc) == message

    def test_http_status(self) -> None:
        assert InvalidCredentialsError().http_status == 401
        assert NetworkError().http_status is None
        assert AuthenticationError("nope", http_status=429).http_status == 429

    def test_channel_not_open(self) -> None:
        assert ChannelNotOpenError().message == "Realtime channel is not open"
