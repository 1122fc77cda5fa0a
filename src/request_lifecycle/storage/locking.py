"""Apply lock decisions to stored requests through conditional writes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from request_lifecycle.config import load_settings
from request_lifecycle.lifecycle.lock import LOCK_TTL_MS, acquire_lock, release_lock
from request_lifecycle.logging_utils import get_logger
from request_lifecycle.storage.db import (
    RequestNotFoundError,
    SqliteRequestStore,
    VersionConflictError,
)
from request_lifecycle.utils.time import utc_now


def _max_retries(max_retries: int | None) -> int:
    if max_retries is not None:
        return max_retries
    return load_settings().locks.cas_max_retries


def acquire_request_lock(
    store: SqliteRequestStore,
    request_id: str,
    *,
    operation: str,
    holder: str,
    now: datetime | None = None,
    ttl_ms: int = LOCK_TTL_MS,
    max_retries: int | None = None,
) -> dict[str, Any]:
    """Take the request lock and return the stored document holding it.

    A lost compare-and-swap means another writer changed the request between
    read and write; the document is re-read and the decision taken again, so
    a competing holder surfaces as :class:`LockConflictError`.
    """
    logger = get_logger(__name__)
    retries = _max_retries(max_retries)
    for attempt in range(retries + 1):
        stored = store.get(request_id)
        if stored is None:
            raise RequestNotFoundError(request_id)
        patch = acquire_lock(
            stored.document,
            operation=operation,
            holder=holder,
            now=now or utc_now(),
            ttl_ms=ttl_ms,
        )
        if patch.is_noop:
            return stored.document
        updated = patch.apply(stored.document)
        if store.compare_and_swap(request_id, updated, stored.version):
            logger.info(
                "Lock acquired on request %s by %s for %s", request_id, holder, operation
            )
            return updated
        logger.info(
            "Lock write on request %s lost a race (attempt %d/%d); re-reading",
            request_id,
            attempt + 1,
            retries + 1,
        )
    raise VersionConflictError(request_id, stored.version)


def release_request_lock(
    store: SqliteRequestStore,
    request_id: str,
    holder: str,
    *,
    max_retries: int | None = None,
) -> bool:
    """Clear the request lock if ``holder`` owns it.

    Returns True when the stored document no longer carries ``holder``'s
    lock, False when someone else holds it.
    """
    logger = get_logger(__name__)
    retries = _max_retries(max_retries)
    for _ in range(retries + 1):
        stored = store.get(request_id)
        if stored is None:
            raise RequestNotFoundError(request_id)
        patch = release_lock(stored.document, holder)
        if patch is None:
            logger.warning(
                "Refusing to release lock on request %s: not held by %s", request_id, holder
            )
            return False
        if patch.is_noop:
            return True
        if store.compare_and_swap(request_id, patch.apply(stored.document), stored.version):
            logger.info("Lock released on request %s by %s", request_id, holder)
            return True
    raise VersionConflictError(request_id, stored.version)
