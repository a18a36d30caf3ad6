"""Application lifecycle management - wiring, startup and shutdown of the session core.

Hey future me - there are NO module-level singletons in this package. Everything is built here,
once, by build_session_core() and handed around as explicit instances. If some code needs the
session, pass it the SessionCore (or the piece it needs), don't add a global.

Startup order (session_lifespan):
1. Logging
2. Cache tables
3. Purge worker task
4. session.init()  -> restores the stored login and opens the realtime channel

Shutdown runs in reverse. Tokens stay in the token store so the next start logs back in.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field

import httpx

from pandorabox.application.cache.media_cache import MediaCache
from pandorabox.application.services.sessions.session_state_machine import SessionStateMachine
from pandorabox.application.workers.cache_purge_worker import CachePurgeWorker
from pandorabox.config import Settings, get_settings
from pandorabox.domain.ports import IClock, IRealtimeConnector, ITokenStore
from pandorabox.infrastructure.clock import SystemClock
from pandorabox.infrastructure.integrations.auth_backend import HttpAuthBackend
from pandorabox.infrastructure.integrations.proxy_client import AuthenticatedProxyClient
from pandorabox.infrastructure.observability import configure_logging
from pandorabox.infrastructure.persistence.database import Database
from pandorabox.infrastructure.persistence.database_cache import DatabaseCache
from pandorabox.infrastructure.persistence.token_store import DatabaseTokenStore
from pandorabox.infrastructure.realtime.aiohttp_connector import AiohttpRealtimeConnector
from pandorabox.infrastructure.realtime.channel import RealtimeChannel, TokenProvider

logger = logging.getLogger(__name__)

WORKER_STOP_TIMEOUT = 5.0


@dataclass
class SessionCore:
    """Everything the dashboard needs, built once per process."""

    settings: Settings
    clock: IClock
    http_client: httpx.AsyncClient
    token_store: ITokenStore
    auth_backend: HttpAuthBackend
    session: SessionStateMachine
    database: Database
    media_cache: MediaCache
    proxy: AuthenticatedProxyClient
    purge_worker: CachePurgeWorker
    _purge_task: asyncio.Task[None] | None = field(default=None, repr=False)

    def start_workers(self) -> None:
        """Start background workers (idempotent)."""
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.create_task(self.purge_worker.start())

    async def stop_workers(self) -> None:
        """Stop background workers, cancelling them if they don't stop in time."""
        task, self._purge_task = self._purge_task, None
        if task is None:
            return
        self.purge_worker.stop()
        try:
            await asyncio.wait_for(task, timeout=WORKER_STOP_TIMEOUT)
        except TimeoutError:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    # Listen up, every step gets its own try so one failing close doesn't leak the rest.
    async def aclose(self) -> None:
        """Shut everything down. Stored tokens are kept."""
        try:
            await self.stop_workers()
        except Exception as e:
            logger.exception("Error stopping workers: %s", e)

        try:
            await self.session.shutdown()
        except Exception as e:
            logger.exception("Error shutting down session: %s", e)

        try:
            await self.database.close()
        except Exception as e:
            logger.exception("Error closing cache database: %s", e)

        try:
            await self.http_client.aclose()
        except Exception as e:
            logger.exception("Error closing HTTP client: %s", e)

        close_store = getattr(self.token_store, "close", None)
        if close_store is not None:
            try:
                close_store()
            except Exception as e:
                logger.exception("Error closing token store: %s", e)


def build_session_core(
    settings: Settings | None = None,
    *,
    clock: IClock | None = None,
    http_client: httpx.AsyncClient | None = None,
    connector: IRealtimeConnector | None = None,
    token_store: ITokenStore | None = None,
) -> SessionCore:
    """Wire up the session core.

    Args:
        settings: Settings to use (defaults to get_settings())
        clock: Time source (defaults to SystemClock)
        http_client: Shared HTTP client (defaults to one with the configured timeout)
        connector: WebSocket transport (defaults to aiohttp)
        token_store: Token storage (defaults to DatabaseTokenStore)

    Returns:
        Fully wired (not yet started) SessionCore
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.auth.request_timeout)
    )
    connector = connector or AiohttpRealtimeConnector(
        connect_timeout=settings.realtime.connect_timeout_seconds
    )
    token_store = token_store or DatabaseTokenStore(settings.storage.token_database_url)

    auth_backend = HttpAuthBackend(http_client, settings.auth.base_url, clock)

    def channel_factory(token_provider: TokenProvider) -> RealtimeChannel:
        return RealtimeChannel(
            settings.realtime.url,
            connector,
            clock,
            token_provider=token_provider,
            reconnect_delay=settings.realtime.reconnect_delay_seconds,
            heartbeat_interval=settings.realtime.heartbeat_interval_seconds,
        )

    session = SessionStateMachine(
        token_store,
        auth_backend,
        channel_factory,
        clock,
        refresh_threshold=settings.auth.refresh_threshold_seconds,
    )

    database = Database(settings.storage.cache_database_url)
    media_cache = MediaCache(DatabaseCache(database, clock))

    return SessionCore(
        settings=settings,
        clock=clock,
        http_client=http_client,
        token_store=token_store,
        auth_backend=auth_backend,
        session=session,
        database=database,
        media_cache=media_cache,
        proxy=AuthenticatedProxyClient(http_client, session),
        purge_worker=CachePurgeWorker(
            media_cache, settings.storage.cache_purge_interval_seconds
        ),
    )


# Everything before `yield` is STARTUP, everything after is SHUTDOWN. The finally makes sure
# shutdown runs even when init() or table creation blows up.
@asynccontextmanager
async def session_lifespan(
    settings: Settings | None = None,
    *,
    clock: IClock | None = None,
    http_client: httpx.AsyncClient | None = None,
    connector: IRealtimeConnector | None = None,
    token_store: ITokenStore | None = None,
) -> AsyncGenerator[SessionCore, None]:
    """Build, start and finally tear down the session core.

    Args:
        settings: Settings to use (defaults to get_settings())
        clock: See build_session_core
        http_client: See build_session_core
        connector: See build_session_core
        token_store: See build_session_core

    Yields:
        The started SessionCore (session.init() already ran)
    """
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting session core: %s", settings.app_name)

    core = build_session_core(
        settings,
        clock=clock,
        http_client=http_client,
        connector=connector,
        token_store=token_store,
    )
    try:
        await core.database.create_tables()
        logger.info("Cache database ready: %s", settings.storage.cache_database_url)

        core.start_workers()

        session = await core.session.init()
        logger.info("Session initialized: %s", session.state.value)

        yield core
    finally:
        logger.info("Shutting down session core")
        await core.aclose()
        logger.info("Session core stopped")
