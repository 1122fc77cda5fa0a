"""Request-level advisory lock.

The functions here only decide; they return a :class:`LockPatch` describing
the change to the request document. Mutual exclusion holds only when the
caller writes that patch with a conditional update (see
``request_lifecycle.storage.locking``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping

from request_lifecycle.domain.snapshot import RequestLock
from request_lifecycle.utils.time import ensure_utc, isoformat_z, parse_timestamp

logger = logging.getLogger(__name__)

LOCK_TTL_MS = 2 * 60 * 1000


class LockConflictError(RuntimeError):
    """Raised when a different holder owns a lock that has not expired."""

    def __init__(self, message: str, *, operation: str, holder: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.holder = holder


@dataclass(frozen=True)
class LockPatch:
    action: Literal["set", "clear", "noop"]
    lock: RequestLock | None = None

    @property
    def is_noop(self) -> bool:
        return self.action == "noop"

    def apply(self, document: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``document`` with this patch applied.

        A cleared lock removes the ``lock`` key entirely rather than storing an
        empty value.
        """
        updated = dict(document)
        if self.action == "set" and self.lock is not None:
            updated["lock"] = self.lock.to_document()
        elif self.action == "clear":
            updated.pop("lock", None)
        return updated


_NOOP = LockPatch("noop")


def _coerce_lock(value: object) -> RequestLock | None:
    if value is None or isinstance(value, RequestLock):
        return value
    if isinstance(value, Mapping):
        try:
            return RequestLock.model_validate(value)
        except ValueError:
            logger.warning("Ignoring malformed lock on request document: %r", value)
            return None
    return None


def _lock_from_document(request_doc: Mapping[str, Any]) -> RequestLock | None:
    return _coerce_lock(request_doc.get("lock"))


def is_lock_expired(lock: RequestLock | Mapping[str, Any] | None, now: datetime) -> bool:
    """True when there is no lock, its expiry is unparsable, or ``now`` has reached it."""
    current = _coerce_lock(lock)
    if current is None:
        return True
    expires_at = parse_timestamp(current.expires_at)
    if expires_at is None:
        return True
    return ensure_utc(now) >= expires_at


def is_lock_active(lock: RequestLock | Mapping[str, Any] | None, now: datetime) -> bool:
    return not is_lock_expired(lock, now)


def acquire_lock(
    request_doc: Mapping[str, Any],
    *,
    operation: str,
    holder: str,
    now: datetime,
    ttl_ms: int = LOCK_TTL_MS,
) -> LockPatch:
    """Decide whether ``holder`` may take the request lock for ``operation``.

    - no lock, or an expired one: a ``set`` patch with a fresh lock
    - live lock held by the same holder: a ``noop`` patch (re-entry)
    - live lock held by someone else: :class:`LockConflictError`
    """
    if ttl_ms <= 0:
        raise ValueError(f"Lock TTL must be positive, got {ttl_ms}ms")

    existing = _lock_from_document(request_doc)
    if existing is None or is_lock_expired(existing, now):
        lock = RequestLock(
            holder=holder,
            operation=operation,
            acquired_at=isoformat_z(now),
            expires_at=isoformat_z(now + timedelta(milliseconds=ttl_ms)),
        )
        return LockPatch("set", lock)

    if existing.holder == holder:
        return _NOOP

    raise LockConflictError(
        f"Request locked by {existing.holder} for operation {existing.operation}",
        operation=existing.operation,
        holder=existing.holder,
    )


def release_lock(request_doc: Mapping[str, Any], holder: str) -> LockPatch | None:
    """Return a patch clearing the lock if ``holder`` owns it.

    Returns a ``noop`` patch when there is no lock and None when another
    holder owns it; the caller must not write in that case.
    """
    existing = _lock_from_document(request_doc)
    if existing is None:
        return _NOOP
    if existing.holder != holder:
        return None
    return LockPatch("clear")
