"""HTTP client for proxied upstream calls (catalog, torrents, containers, media server).

Hey future me - this is the "read-only consumer" side of the session. It asks the session for a
token and, on a 401, asks it to refresh. It NEVER touches the token store itself. All the
401 -> refresh -> retry-once logic that was copy-pasted into every old API service lives here.
"""

import logging
from typing import Any

import httpx

from pandorabox.application.services.sessions.session_state_machine import SessionStateMachine
from pandorabox.domain.exceptions import AuthenticationError, NetworkError
from pandorabox.infrastructure.observability.logging import get_correlation_id

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AuthenticatedProxyClient:
    """Bearer-authenticated requests with one refresh-and-retry on 401."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: SessionStateMachine,
        base_url: str = "",
    ) -> None:
        """Initialize proxy client.

        Args:
            client: Shared HTTP client
            session: Session to take tokens from (read + refresh_token() only)
            base_url: Prefix for relative request URLs
        """
        self._client = client
        self._session = session
        self._base_url = base_url.rstrip("/")

    # Listen up, exactly ONE retry. If the retried request gets a 401 again it's returned as-is -
    # looping refresh/retry against a server that hates our token would hammer /refresh forever.
    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to base_url
            **kwargs: Passed to httpx.AsyncClient.request (params, json, ...)

        Returns:
            The upstream response (any status except an unrecoverable 401)

        Raises:
            AuthenticationError: No session, or the 401 could not be fixed by a refresh
            NetworkError: Upstream unreachable or timed out
        """
        token = await self._session.get_access_token()
        if token is None:
            raise AuthenticationError("Not authenticated", http_status=401)

        response = await self._send(method, url, token, **kwargs)
        if response.status_code != 401:
            return response

        logger.info("Upstream returned 401 for %s %s, refreshing token", method, url)
        if not await self._session.refresh_token():
            raise AuthenticationError("Session expired. Please log in again.", http_status=401)

        token = self._session.access_token
        if token is None:
            raise AuthenticationError("Session expired. Please log in again.", http_status=401)
        return await self._send(method, url, token, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated GET."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated POST."""
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated PUT."""
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated DELETE."""
        return await self.request("DELETE", url, **kwargs)

    async def _send(
        self, method: str, url: str, token: str, **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_HEADER] = correlation_id

        try:
            return await self._client.request(
                method, self._resolve(url), headers=headers, **kwargs
            )
        except httpx.TimeoutException as e:
            raise NetworkError("Request timed out. Please try again.") from e
        except httpx.HTTPError as e:
            logger.warning("Proxied request %s %s failed: %s", method, url, e)
            raise NetworkError() from e

    def _resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self._base_url:
            return url
        return f"{self._base_url}/{url.lstrip('/')}"
