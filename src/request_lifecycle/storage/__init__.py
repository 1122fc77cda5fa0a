"""Persistence boundary for request documents."""

from .db import RequestNotFoundError, SqliteRequestStore, StoredRequest, VersionConflictError
from .locking import acquire_request_lock, release_request_lock

__all__ = [
    "RequestNotFoundError",
    "SqliteRequestStore",
    "StoredRequest",
    "VersionConflictError",
    "acquire_request_lock",
    "release_request_lock",
]
