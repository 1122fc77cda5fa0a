"""Idempotency keys for request mutations.

A mutation (apply, destroy, approve, ...) may carry a client-supplied key.
The last key per operation is stored on the request document under
``idempotency``. Within the window the same key is a replay and a different
key is a conflict; once the window has passed the new key is recorded.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping

from request_lifecycle.utils.time import ensure_utc, isoformat_z, parse_timestamp

IDEMPOTENCY_WINDOW_MS = 10 * 60 * 1000
KEY_MAX_LENGTH = 512


class IdempotencyConflictError(RuntimeError):
    """Raised when a different key was used for the same operation inside the window."""

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation


@dataclass(frozen=True)
class IdempotencyDecision:
    mode: Literal["no_key", "replay", "recorded"]
    patch: dict[str, Any] | None = None

    @property
    def should_run(self) -> bool:
        return self.mode != "replay"

    def apply(self, document: Mapping[str, Any]) -> dict[str, Any]:
        updated = dict(document)
        if self.patch is not None:
            updated.update(self.patch)
        return updated


def normalize_idempotency_key(raw: str | None) -> str | None:
    """Trim and length-cap a client key; blank keys become None."""
    if raw is None:
        return None
    key = raw.strip()[:KEY_MAX_LENGTH]
    return key or None


def is_within_window(at: str | datetime | None, now: datetime, window_ms: int) -> bool:
    recorded = parse_timestamp(at)
    if recorded is None:
        return False
    return ensure_utc(now) - recorded <= timedelta(milliseconds=window_ms)


def assert_idempotent_or_record(
    request_doc: Mapping[str, Any],
    *,
    operation: str,
    key: str | None,
    now: datetime,
    window_ms: int = IDEMPOTENCY_WINDOW_MS,
) -> IdempotencyDecision:
    """Decide whether a keyed mutation runs, replays or conflicts.

    - no key: ``no_key``, run without recording anything
    - same key inside the window: ``replay``, do not run again
    - different key inside the window: :class:`IdempotencyConflictError`
    - otherwise: ``recorded`` with a patch storing the new key
    """
    if not key:
        return IdempotencyDecision("no_key")

    records = request_doc.get("idempotency")
    base = dict(records) if isinstance(records, Mapping) else {}
    existing = base.get(operation)

    if isinstance(existing, Mapping) and is_within_window(existing.get("at"), now, window_ms):
        if existing.get("key") == key:
            return IdempotencyDecision("replay")
        raise IdempotencyConflictError(
            f"Idempotency key mismatch for operation {operation}", operation=operation
        )

    base[operation] = {"key": key, "at": isoformat_z(now)}
    return IdempotencyDecision("recorded", {"idempotency": base})


@dataclass
class _CreateRecord:
    request_id: str
    at: datetime
    request_doc: dict[str, Any]


@dataclass
class CreateIdempotencyCache:
    """Process-local replay cache for request creation.

    There is no request document to store the key on before the request
    exists, so create keys live here and are pruned after the window.
    """

    window_ms: int = IDEMPOTENCY_WINDOW_MS
    _records: dict[str, _CreateRecord] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def _prune(self, now: datetime) -> None:
        cutoff = ensure_utc(now) - timedelta(milliseconds=self.window_ms)
        for key in [k for k, record in self._records.items() if record.at < cutoff]:
            del self._records[key]

    def check(self, key: str | None, now: datetime) -> dict[str, Any] | None:
        """Return the stored request document when ``key`` is a recent replay."""
        if not key:
            return None
        with self._lock:
            self._prune(now)
            record = self._records.get(key)
        if record is None:
            return None
        return dict(record.request_doc)

    def record(self, key: str | None, request_id: str, request_doc: Mapping[str, Any], now: datetime) -> None:
        if not key:
            return
        with self._lock:
            self._records[key] = _CreateRecord(request_id, ensure_utc(now), dict(request_doc))
            self._prune(now)
