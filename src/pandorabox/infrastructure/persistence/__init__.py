"""Infrastructure persistence layer."""

from .database import Database
from .database_cache import DatabaseCache
from .models import AuthTokenModel, Base, MediaCacheModel
from .token_store import TOKEN_STORAGE_KEY, DatabaseTokenStore

__all__ = [
    "TOKEN_STORAGE_KEY",
    "AuthTokenModel",
    "Base",
    "Database",
    "DatabaseCache",
    "DatabaseTokenStore",
    "MediaCacheModel",
]
