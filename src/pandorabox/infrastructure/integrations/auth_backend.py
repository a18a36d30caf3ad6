"""HTTP client for the Pandora Box auth endpoints (login/verify/refresh/logout)."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from pandorabox.domain.entities import TokenPair, UserProfile
from pandorabox.domain.exceptions import (
    AuthenticationError,
    InvalidCredentialsError,
    NetworkError,
    TokenExpiredError,
    TokenInvalidError,
)
from pandorabox.domain.ports import AuthGrant, IAuthBackend, IClock
from pandorabox.infrastructure.clock import SystemClock

logger = logging.getLogger(__name__)

# Token lifetimes the server hands out. Only used when a response forgets expiresAt.
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)
REMEMBER_ME_TOKEN_LIFETIME = timedelta(days=90)

_EXPIRED_CODES = {"TOKEN_EXPIRED"}


# =============================================================================
# Response schemas
# Hey future me - these mirror the server's JSON exactly (camelCase aliases). extra="ignore"
# because the server adds fields (session info, timestamps) we don't care about.
# =============================================================================


class _UserPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    username: str
    email: str | None = None
    role: str = "user"

    def to_profile(self) -> UserProfile:
        return UserProfile(
            id=str(self.id),
            username=self.username,
            email=self.email,
            role=self.role,
            extra=dict(self.model_extra or {}),
        )


class _TokenData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str = Field(min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    remember_me: bool | None = Field(default=None, alias="rememberMe")
    user: _UserPayload | None = None


class _VerifyData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user: _UserPayload


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    message: str | None = None
    data: dict[str, Any] | None = None
    error: dict[str, Any] | str | None = None


class HttpAuthBackend(IAuthBackend):
    """IAuthBackend talking to the dashboard server over HTTP."""

    # Hey future me, the AsyncClient is INJECTED and shared (lifecycle owns it and closes it).
    # Don't create a client per call - that throws away the connection pool every time.
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        clock: IClock | None = None,
    ) -> None:
        """Initialize auth backend.

        Args:
            client: Shared HTTP client (timeouts are configured on it)
            base_url: Auth endpoint root, e.g. http://localhost:3001/api/v1/auth
            clock: Time source for the expiresAt fallback
        """
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._clock = clock or SystemClock()

    # =========================================================================
    # IAuthBackend
    # =========================================================================

    async def login(self, username: str, password: str, remember_me: bool = False) -> AuthGrant:
        """Exchange credentials for a user profile and token pair.

        Raises:
            InvalidCredentialsError: Server rejected the credentials (400/401/403)
            NetworkError: Server unreachable, timed out or broken (5xx, garbage body)
        """
        response = await self._post(
            "/login",
            json={"username": username, "password": password, "rememberMe": remember_me},
        )
        if response.status_code in (400, 401, 403):
            logger.debug("Login rejected: %s", self._error_message(response))
            raise InvalidCredentialsError(http_status=response.status_code)
        self._raise_for_server_error(response)

        envelope = self._parse_envelope(response)
        if not envelope.success or not envelope.data:
            raise InvalidCredentialsError(http_status=response.status_code)

        data = self._parse(_TokenData, envelope.data)
        if data.user is None or not data.refresh_token:
            raise NetworkError("Login response is missing user or tokens")

        remember = data.remember_me if data.remember_me is not None else remember_me
        tokens = TokenPair(
            access_token=data.token,
            refresh_token=data.refresh_token,
            expires_at=self._expiry(data.expires_at, remember),
            remember_me=remember,
        )
        return AuthGrant(user=data.user.to_profile(), tokens=tokens)

    async def verify(self, access_token: str) -> UserProfile:
        """Check an access token and return its user.

        Raises:
            TokenExpiredError / TokenInvalidError: Server rejected the token (401/403)
            NetworkError: Server unreachable or broken
        """
        response = await self._post("/verify", token=access_token)
        self._raise_for_token_error(response)

        envelope = self._parse_envelope(response)
        if not envelope.success or not envelope.data:
            raise TokenInvalidError(self._error_message(response) or "Token invalid")
        return self._parse(_VerifyData, envelope.data).user.to_profile()

    # Listen up, the server keeps the refresh token when it doesn't send a new one, so we do the
    # same. remember_me is SENT along and carried over into the new pair - a remembered session
    # stays remembered after a refresh (the server extends with the session's rememberMe too).
    async def refresh(self, refresh_token: str, remember_me: bool = False) -> TokenPair:
        """Trade a refresh token for a new pair.

        Raises:
            TokenExpiredError / TokenInvalidError: Refresh token rejected (401/403)
            NetworkError: Server unreachable or broken
        """
        response = await self._post(
            "/refresh",
            token=refresh_token,
            json={"refreshToken": refresh_token, "rememberMe": remember_me},
        )
        self._raise_for_token_error(response)

        envelope = self._parse_envelope(response)
        if not envelope.success or not envelope.data:
            raise TokenInvalidError(self._error_message(response) or "Token refresh failed")

        data = self._parse(_TokenData, envelope.data)
        return TokenPair(
            access_token=data.token,
            refresh_token=data.refresh_token or refresh_token,
            expires_at=self._expiry(data.expires_at, remember_me),
            remember_me=remember_me,
        )

    async def logout(self, access_token: str) -> None:
        """Invalidate the server-side session.

        Raises:
            NetworkError: Server unreachable or broken
            TokenInvalidError: Server refused (session is gone anyway)
        """
        response = await self._post("/logout", token=access_token)
        self._raise_for_token_error(response)

    # =========================================================================
    # HTTP HELPERS
    # =========================================================================

    # Hey future me - EVERY transport problem becomes NetworkError here. httpx.TimeoutException is
    # a subclass of httpx.HTTPError (TransportError), so one except catches timeouts too.
    async def _post(
        self, path: str, token: str | None = None, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.post(f"{self._base_url}{path}", json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Auth request %s timed out", path)
            raise NetworkError("Request timed out. Please try again.") from e
        except httpx.HTTPError as e:
            logger.warning("Auth request %s failed: %s", path, e)
            raise NetworkError() from e

    def _raise_for_server_error(self, response: httpx.Response) -> None:
        if response.status_code >= 500:
            logger.warning(
                "Auth server error %d: %s", response.status_code, self._error_message(response)
            )
            raise NetworkError(http_status=response.status_code)
        if response.is_error:
            raise AuthenticationError(
                self._error_message(response) or f"HTTP {response.status_code}",
                http_status=response.status_code,
            )

    def _raise_for_token_error(self, response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            message = self._error_message(response) or "Token invalid"
            if self._error_code(response) in _EXPIRED_CODES or "expired" in message.lower():
                raise TokenExpiredError(message, http_status=response.status_code)
            raise TokenInvalidError(message, http_status=response.status_code)
        self._raise_for_server_error(response)

    def _parse_envelope(self, response: httpx.Response) -> _Envelope:
        try:
            return _Envelope.model_validate_json(response.content)
        except PydanticValidationError as e:
            raise NetworkError("Invalid response from auth server") from e

    @staticmethod
    def _parse[M: BaseModel](model: type[M], data: dict[str, Any]) -> M:
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise NetworkError("Invalid response from auth server") from e

    # Errors come as {"error": {"code", "message"}} from the error middleware, or as a flat
    # {"message"} from older handlers. Non-JSON bodies (proxy error pages) yield None.
    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _error_message(self, response: httpx.Response) -> str | None:
        body = self._error_body(response)
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        message = body.get("message")
        return str(message) if message else None

    def _error_code(self, response: httpx.Response) -> str | None:
        error = self._error_body(response).get("error")
        if isinstance(error, dict) and error.get("code"):
            return str(error["code"])
        return None

    def _expiry(self, expires_at: datetime | None, remember_me: bool) -> datetime:
        if expires_at is not None:
            return expires_at
        lifetime = REMEMBER_ME_TOKEN_LIFETIME if remember_me else DEFAULT_TOKEN_LIFETIME
        return datetime.fromtimestamp(self._clock.time(), UTC) + lifetime
