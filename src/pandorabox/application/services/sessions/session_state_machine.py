"""Session state machine - owns authentication state, the token store and the realtime channel.

Hey future me - this is THE ONE place that writes the token store or changes the session. Pages,
proxy clients and workers only read (session, access_token, auth_headers()) and subscribe. If you
find yourself calling token_store.save() anywhere else, stop and add a method here instead.

States:
    UNAUTHENTICATED --init()--> INITIALIZING --> AUTHENTICATED | UNAUTHENTICATED | ERROR
    UNAUTHENTICATED --login()--> AUTHENTICATED
    AUTHENTICATED --refresh_token()--> REFRESHING --> AUTHENTICATED | UNAUTHENTICATED (forced logout)
    any --logout()--> UNAUTHENTICATED

While authenticated a refresh timer is armed for refresh_threshold seconds before the access token
expires, so an idle session (channel open, no requests) still rotates its tokens in time.

Auth failures NEVER escape as exceptions: login() returns LoginResult, refresh_token() returns a
bool, init() lands in UNAUTHENTICATED. Only a genuinely unexpected exception inside init() ends
in ERROR, so the UI can tell "not logged in" apart from "startup is broken".
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from pandorabox.application.services.sessions.single_flight import SingleFlight
from pandorabox.domain.entities import (
    LoginResult,
    Session,
    SessionState,
    TokenPair,
    UserProfile,
)
from pandorabox.domain.exceptions import AuthenticationError
from pandorabox.domain.ports import IAuthBackend, IClock, ITimerHandle, ITokenStore
from pandorabox.infrastructure.realtime.channel import RealtimeChannel, TokenProvider

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_THRESHOLD = 300.0  # seconds before expiry

INIT_ERROR_MESSAGE = "Failed to initialize authentication"
LOGIN_ERROR_MESSAGE = "Login failed. Please try again."

SessionListener = Callable[[Session], Any]
AuthChangeListener = Callable[[bool], Any]
ChannelFactory = Callable[[TokenProvider], RealtimeChannel]


class SessionStateMachine:
    """Process-wide session orchestrator."""

    def __init__(
        self,
        token_store: ITokenStore,
        auth_backend: IAuthBackend,
        channel_factory: ChannelFactory,
        clock: IClock,
        refresh_threshold: float = DEFAULT_REFRESH_THRESHOLD,
    ) -> None:
        """Initialize the state machine in UNAUTHENTICATED.

        Args:
            token_store: Durable storage for the token pair (only written from here!)
            auth_backend: Login/verify/refresh/logout calls
            channel_factory: Builds the realtime channel; receives a token provider
            clock: Time source for expiry checks
            refresh_threshold: get_access_token() refreshes when expiry is this close
        """
        self._token_store = token_store
        self._auth = auth_backend
        self._clock = clock
        self._refresh_threshold = refresh_threshold

        self._session = Session()
        self._inflight = SingleFlight()
        # Bumped on every login, logout and shutdown. An init or refresh that started in an older
        # generation must not resurrect the session it was started for, nor clobber a newer one.
        self._generation = 0
        self._refresh_timer: ITimerHandle | None = None
        # Strong refs for timer-triggered refreshes, otherwise the loop may GC them mid-flight
        self._background: set[asyncio.Task[None]] = set()

        self._listeners: list[SessionListener] = []
        self._auth_listeners: list[AuthChangeListener] = []

        self._channel = channel_factory(self._current_access_token)

    # =========================================================================
    # READ API
    # =========================================================================

    @property
    def session(self) -> Session:
        """Current (immutable) session snapshot."""
        return self._session

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._session.state

    @property
    def user(self) -> UserProfile | None:
        """Authenticated user, None otherwise."""
        return self._session.user

    @property
    def is_authenticated(self) -> bool:
        """Check if the user is logged in."""
        return self._session.is_authenticated

    @property
    def is_admin(self) -> bool:
        """Check if the logged-in user is an admin."""
        return self._session.user is not None and self._session.user.is_admin

    @property
    def channel(self) -> RealtimeChannel:
        """The realtime channel owned by this session (subscribe here, never connect)."""
        return self._channel

    @property
    def access_token(self) -> str | None:
        """Stored access token while authenticated."""
        return self._current_access_token()

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for proxied API requests."""
        token = self._current_access_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener called with every new Session snapshot.

        Returns:
            Function that removes the listener (safe to call twice)
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_auth_change(self, listener: AuthChangeListener) -> Callable[[], None]:
        """Register a listener called only when is_authenticated flips.

        Returns:
            Function that removes the listener
        """
        self._auth_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._auth_listeners:
                self._auth_listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # INIT
    # =========================================================================

    # Hey future me, init() is SINGLE-FLIGHT. Two components mounting at once both call it and both
    # get the outcome of ONE token-store read + verify/refresh sequence. Without that they'd race
    # and one could clear the token store while the other just refreshed into it.
    async def init(self) -> Session:
        """Restore the session from stored tokens.

        Returns:
            Resulting session (AUTHENTICATED, UNAUTHENTICATED or ERROR)
        """
        if self._session.state is SessionState.AUTHENTICATED:
            return self._session
        return await self._inflight.do("init", self._perform_init)

    async def _perform_init(self) -> Session:
        generation = self._generation
        self._transition(SessionState.INITIALIZING, error=None)
        try:
            pair = self._token_store.load()
            if pair is None:
                logger.info("No stored auth found, user needs to login")
                self._transition(SessionState.UNAUTHENTICATED, user=None)
                return self._session

            user = await self._verify_with_refresh(pair, generation)
            # A logout (or a login) landed while we were talking to the server. Whatever we found
            # out belongs to a session that no longer exists - leave the current one alone.
            if generation != self._generation:
                logger.info("Discarding init result, session changed meanwhile")
                return self._session

            if user is None:
                logger.info("Stored authentication is no longer valid, clearing tokens")
                self._token_store.clear()
                self._transition(SessionState.UNAUTHENTICATED, user=None)
                return self._session

            await self._become_authenticated(user)
            logger.info("Session restored for user %s", user.username)
        except Exception:
            logger.exception("Auth initialization failed")
            if generation == self._generation:
                self._transition(SessionState.ERROR, user=None, error=INIT_ERROR_MESSAGE)
        return self._session

    # Listen up, the exact sequence is verify -> (one) refresh -> (one) verify. No loops, no second
    # refresh. Returns None on ANY auth failure in the chain; caller clears the store. Also returns
    # None as soon as the generation moved on, and in that case NEVER writes the token store.
    async def _verify_with_refresh(self, pair: TokenPair, generation: int) -> UserProfile | None:
        try:
            return await self._auth.verify(pair.access_token)
        except AuthenticationError as exc:
            logger.info("Token verification failed (%s), attempting refresh", exc.message)

        if generation != self._generation:
            return None
        try:
            new_pair = await self._auth.refresh(pair.refresh_token, remember_me=pair.remember_me)
            if generation != self._generation:
                return None
            self._token_store.save(new_pair)
            return await self._auth.verify(new_pair.access_token)
        except AuthenticationError as exc:
            logger.info("Token refresh during init failed: %s", exc.message)
            return None

    # =========================================================================
    # LOGIN / LOGOUT
    # =========================================================================

    async def login(
        self, username: str, password: str, remember_me: bool = False
    ) -> LoginResult:
        """Log in with credentials.

        On failure only session.error changes - the token store and state stay untouched.

        Returns:
            LoginResult(success=True, user) or LoginResult(success=False, error)
        """
        try:
            grant = await self._auth.login(username, password, remember_me)
        except AuthenticationError as exc:
            logger.info("Login failed for %s: %s", username, exc.message)
            self._transition(self._session.state, error=exc.message)
            return LoginResult(success=False, error=exc.message)
        except Exception:
            logger.exception("Login error")
            self._transition(self._session.state, error=LOGIN_ERROR_MESSAGE)
            return LoginResult(success=False, error=LOGIN_ERROR_MESSAGE)

        # New generation: a restore or refresh still in flight must not touch these tokens
        self._generation += 1
        self._token_store.save(grant.tokens)
        await self._become_authenticated(grant.user)
        logger.info("User %s logged in", grant.user.username)
        return LoginResult(success=True, user=grant.user)

    # Hey future me, ORDER MATTERS here: channel closed first (sync, so it can't outlive the
    # session), then the server call (best effort - a dead network must not keep you logged in),
    # then the local cleanup in finally so it ALWAYS happens.
    async def logout(self) -> None:
        """Log out and reset to UNAUTHENTICATED."""
        self._generation += 1
        self._cancel_refresh_timer()
        self._channel.disconnect()
        try:
            pair = self._token_store.load()
            if pair is not None:
                await self._auth.logout(pair.access_token)
        except AuthenticationError as exc:
            logger.warning("Server logout failed, clearing local session anyway: %s", exc.message)
        finally:
            self._token_store.clear()
            self._transition(SessionState.UNAUTHENTICATED, user=None, error=None)
            logger.info("Logged out")

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh_token(self) -> bool:
        """Rotate the token pair (called by proxy layers on a 401).

        Concurrent callers share one refresh. On failure the session is logged out.

        Returns:
            True if the pair was rotated, False if the caller should give up the request
        """
        return await self._inflight.do("refresh", self._perform_refresh)

    async def _perform_refresh(self) -> bool:
        pair = self._token_store.load()
        if pair is None or not self._session.is_authenticated:
            logger.info("Refresh requested without an authenticated session")
            await self.logout()
            return False

        generation = self._generation
        self._transition(SessionState.REFRESHING)
        try:
            new_pair = await self._auth.refresh(pair.refresh_token, remember_me=pair.remember_me)
        except AuthenticationError as exc:
            if generation != self._generation:
                logger.info("Refresh failed after logout, nothing to clean up")
                return False
            logger.warning("Token refresh failed, forcing logout: %s", exc.message)
            await self.logout()
            return False

        # Logout won the race while we were waiting on the server - drop the new tokens
        if generation != self._generation:
            logger.info("Discarding refreshed tokens, session was logged out meanwhile")
            return False

        self._token_store.save(new_pair)
        self._transition(SessionState.AUTHENTICATED)
        self._schedule_refresh(rotated=True)
        logger.debug("Access token refreshed")
        return True

    async def get_access_token(self) -> str | None:
        """Access token for a proxied request, refreshed first if it is about to expire.

        Returns:
            Valid access token, or None if there is no usable session
        """
        pair = self._token_store.load()
        if pair is None or not self._session.is_authenticated:
            return None
        if pair.expires_within(self._refresh_threshold, self._clock.time()):
            logger.debug("Access token expires soon, refreshing proactively")
            if not await self.refresh_token():
                return None
        return self._current_access_token()

    # =========================================================================
    # MISC
    # =========================================================================

    def update_user(self, **fields: Any) -> None:
        """Merge profile changes into the current user (no-op when logged out)."""
        user = self._session.user
        if user is None or not self._session.is_authenticated:
            return
        known = {k: v for k, v in fields.items() if k in ("username", "email", "role")}
        extra = {**user.extra, **{k: v for k, v in fields.items() if k not in known}}
        updated = UserProfile(
            id=user.id,
            username=known.get("username", user.username),
            email=known.get("email", user.email),
            role=known.get("role", user.role),
            extra=extra,
        )
        self._transition(self._session.state, user=updated)

    def clear_error(self) -> None:
        """Clear the last surfaced error message."""
        if self._session.error is not None:
            self._transition(self._session.state, error=None)

    async def shutdown(self) -> None:
        """Process teardown: close the channel and forget the in-memory session.

        Unlike logout(), the stored tokens survive so the next start can restore the session.
        """
        self._generation += 1
        self._cancel_refresh_timer()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._channel.aclose()
        self._transition(SessionState.UNAUTHENTICATED, user=None, error=None)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _become_authenticated(self, user: UserProfile) -> None:
        self._transition(SessionState.AUTHENTICATED, user=user, error=None)
        self._schedule_refresh()
        # connect() never raises - failures go into the channel's own reconnect loop
        await self._channel.connect()

    # Hey future me, this is the timer half of refreshing. get_access_token() only notices expiry
    # when somebody makes a request, so an idle dashboard with just the channel open would sail
    # right past it. Re-armed after login, restore and every successful refresh; cancelled on
    # logout and shutdown. Exactly one timer at a time.
    def _schedule_refresh(self, rotated: bool = False) -> None:
        self._cancel_refresh_timer()
        pair = self._token_store.load()
        if pair is None:
            return
        delay = pair.expires_at.timestamp() - self._refresh_threshold - self._clock.time()
        if delay <= 0 and rotated:
            # Brand-new tokens already inside the threshold would refresh in a tight loop
            logger.warning(
                "Refreshed token expires within %.0fs, not scheduling another refresh",
                self._refresh_threshold,
            )
            return
        delay = max(0.0, delay)
        logger.debug("Scheduling token refresh in %.0fs", delay)
        self._refresh_timer = self._clock.call_later(delay, self._on_refresh_due)

    def _on_refresh_due(self) -> None:
        self._refresh_timer = None
        if not self._session.is_authenticated:
            return
        task = asyncio.ensure_future(self._refresh_when_due())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_when_due(self) -> None:
        pair = self._token_store.load()
        if pair is None or not self._session.is_authenticated:
            return
        if not pair.expires_within(self._refresh_threshold, self._clock.time()):
            # Already rotated by get_access_token() or a 401 retry
            return
        logger.info("Access token expires soon, refreshing")
        try:
            await self.refresh_token()
        except Exception:
            logger.exception("Scheduled token refresh failed")

    def _cancel_refresh_timer(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

    def _current_access_token(self) -> str | None:
        if not self._session.is_authenticated:
            return None
        pair = self._token_store.load()
        return pair.access_token if pair else None

    # Yo, every state change goes through here. A NEW Session snapshot is swapped in before any
    # listener runs, so listeners always observe a finished transition. Listener exceptions are
    # logged and skipped - one broken page must not block the rest.
    def _transition(self, state: SessionState, **changes: Any) -> None:
        previous = self._session
        self._session = previous.with_changes(state=state, **changes)
        if self._session == previous:
            return
        if state is not previous.state:
            logger.debug("Session %s -> %s", previous.state.value, state.value)

        snapshot = self._session
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener %r failed", listener)

        if snapshot.is_authenticated != previous.is_authenticated:
            for auth_listener in list(self._auth_listeners):
                try:
                    auth_listener(snapshot.is_authenticated)
                except Exception:
                    logger.exception("Auth change listener %r failed", auth_listener)
