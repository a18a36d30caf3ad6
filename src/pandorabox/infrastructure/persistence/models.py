"""SQLAlchemy ORM models for Pandora Box."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without a
# timezone - naive datetimes blow up as soon as you compare them with aware ones.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# SQLite doesn't preserve timezone info - datetimes come back naive. Attach UTC before comparing
# with anything from utc_now() or you get "can't compare offset-naive and offset-aware".
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models.

    All models inherit from this to use the same metadata registry.
    """

    pass


# Listen up, there is only ever ONE row here, under storage_key "pandora_auth_token". The column
# exists so the table could hold more keys later without a migration, not because we store
# several pairs. Tokens are opaque strings - Text, no length limit, no validation.
class AuthTokenModel(Base):
    """Persisted access/refresh token pair."""

    __tablename__ = "auth_tokens"

    storage_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    remember_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


# Yo, cached_at/expires_at are plain epoch floats from the cache's injected clock, NOT DateTime.
# That keeps expiry comparisons identical between InMemoryCache and DatabaseCache and lets tests
# drive both with the same fake clock. The key is the primary key: one row per key, period.
class MediaCacheModel(Base):
    """Persisted metadata cache entry."""

    __tablename__ = "media_cache"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    cached_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("ix_media_cache_expires_at", "expires_at"),)
