"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, message is stored as an attribute so callers can surface it (LoginResult.error,
    # session.error) without parsing str(exception). Don't raise this base class directly - pick a
    # subclass so callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class ValidationError(DomainException):
    """Input validation failed.

    Example:
        raise ValidationError("Cache source must not contain '_'")
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration.

    Example:
        raise ConfigurationError("Realtime URL must start with ws:// or wss://")
    """

    pass


# =============================================================================
# Auth exceptions
# Hey future me - these NEVER cross the session boundary! SessionStateMachine turns them into
# LoginResult(success=False), a False from refresh_token() or an UNAUTHENTICATED state. Only the
# adapters (HttpAuthBackend) and AuthenticatedProxyClient raise them to their direct callers.
# =============================================================================


class AuthenticationError(DomainException):
    """User is not authenticated or the credentials were rejected.

    HTTP Status: 401
    """

    def __init__(self, message: str, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class InvalidCredentialsError(AuthenticationError):
    """Username/password combination was rejected by the auth backend."""

    def __init__(
        self, message: str = "Invalid credentials", http_status: int | None = 401
    ) -> None:
        super().__init__(message, http_status)


class TokenExpiredError(AuthenticationError):
    """The access or refresh token has expired."""

    def __init__(
        self, message: str = "Token expired", http_status: int | None = 401
    ) -> None:
        super().__init__(message, http_status)


class TokenInvalidError(AuthenticationError):
    """The token was rejected for a reason other than expiry (revoked, malformed, unknown)."""

    def __init__(
        self, message: str = "Token invalid", http_status: int | None = 401
    ) -> None:
        super().__init__(message, http_status)


class NetworkError(AuthenticationError):
    """The auth backend could not be reached or answered with a server error.

    Hey - this subclasses AuthenticationError on purpose so the session machine handles
    "server unreachable" exactly like any other failed auth step.
    """

    def __init__(
        self,
        message: str = "Network error. Please try again.",
        http_status: int | None = None,
    ) -> None:
        super().__init__(message, http_status)


# =============================================================================
# Realtime exceptions
# =============================================================================


class RealtimeError(DomainException):
    """Base class for realtime channel errors."""

    pass


class ChannelNotOpenError(RealtimeError):
    """send() was called while the channel is not OPEN."""

    def __init__(self, message: str = "Realtime channel is not open") -> None:
        super().__init__(message)


class ChannelConnectError(RealtimeError):
    """The WebSocket connection could not be established."""

    pass


class ChannelMessageParseError(RealtimeError):
    """An inbound frame was not a valid {type, payload} JSON object."""

    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


__all__ = [
    # Base
    "DomainException",
    "ValidationError",
    "ConfigurationError",
    # Auth
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "NetworkError",
    # Realtime
    "RealtimeError",
    "ChannelNotOpenError",
    "ChannelConnectError",
    "ChannelMessageParseError",
]
