"""Durable token pair storage.

Hey future me - this is the ITokenStore the SessionStateMachine writes. Nobody else writes here!
It's deliberately SYNCHRONOUS (sync SQLAlchemy engine, local SQLite file): a tiny single-row
read/write is faster than any thread hop, and the state machine needs save() to be finished
before it flips to AUTHENTICATED - no await in between that could interleave.
"""

import logging
from typing import Any, Final

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pandorabox.domain.entities import TokenPair
from pandorabox.domain.ports import ITokenStore
from pandorabox.infrastructure.persistence.database import (
    ensure_sqlite_directory,
    is_memory_sqlite,
)
from pandorabox.infrastructure.persistence.models import (
    AuthTokenModel,
    ensure_utc_aware,
    utc_now,
)

logger = logging.getLogger(__name__)

# The one well-known storage key. Changing it logs everybody out on upgrade!
TOKEN_STORAGE_KEY: Final = "pandora_auth_token"


class DatabaseTokenStore(ITokenStore):
    """Token pair persisted in the auth_tokens table."""

    def __init__(self, url: str, storage_key: str = TOKEN_STORAGE_KEY) -> None:
        """Initialize the store and create its table if needed.

        Args:
            url: Sync SQLAlchemy URL, e.g. sqlite:///./data/pandora.db
            storage_key: Row key the pair is stored under
        """
        self._storage_key = storage_key

        engine_kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if is_memory_sqlite(url):
                engine_kwargs["poolclass"] = StaticPool
            ensure_sqlite_directory(url)

        self._engine = create_engine(url, **engine_kwargs)
        self._session_factory = sessionmaker(self._engine, class_=Session, expire_on_commit=False)
        AuthTokenModel.metadata.create_all(self._engine, tables=[AuthTokenModel.__table__])

    # Listen up, save() is ONE transaction: if the commit fails the old pair is still there, if it
    # succeeds the new pair fully replaced it. Never a half-written pair (new access token with the
    # old refresh token) - that's what "atomic replace on refresh" means.
    def save(self, pair: TokenPair) -> None:
        """Replace the stored pair."""
        with self._session_factory.begin() as session:
            row = session.get(AuthTokenModel, self._storage_key)
            if row is None:
                row = AuthTokenModel(storage_key=self._storage_key)
                session.add(row)
            row.access_token = pair.access_token
            row.refresh_token = pair.refresh_token
            row.expires_at = pair.expires_at
            row.remember_me = pair.remember_me
            row.updated_at = utc_now()
        logger.debug("Token pair saved (expires %s)", pair.expires_at.isoformat())

    def load(self) -> TokenPair | None:
        """Load the stored pair, None if nothing is stored."""
        with self._session_factory() as session:
            row = session.scalar(
                select(AuthTokenModel).where(AuthTokenModel.storage_key == self._storage_key)
            )
            if row is None:
                return None
            return TokenPair(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=ensure_utc_aware(row.expires_at),
                remember_me=row.remember_me,
            )

    def clear(self) -> None:
        """Delete the stored pair - storage looks like we never logged in."""
        with self._session_factory.begin() as session:
            session.execute(
                delete(AuthTokenModel).where(AuthTokenModel.storage_key == self._storage_key)
            )
        logger.debug("Token pair cleared")

    def close(self) -> None:
        """Dispose the engine."""
        self._engine.dispose()
