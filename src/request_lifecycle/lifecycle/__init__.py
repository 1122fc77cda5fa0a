"""Request lifecycle engine.

Pure functions over request snapshots: status derivation, audit trail
reconstruction, advisory locks, idempotency keys and server-authoritative tags.
"""

from request_lifecycle.lifecycle.audit import (
    AuditEvent,
    AuditEventType,
    build_audit_events,
    build_audit_export,
    dump_audit_export,
)
from request_lifecycle.lifecycle.derive import (
    DESTROY_STALE_MINUTES,
    derive_lifecycle_status,
    is_destroy_run_failed,
    is_destroy_run_stale,
)
from request_lifecycle.lifecycle.idempotency import (
    IDEMPOTENCY_WINDOW_MS,
    CreateIdempotencyCache,
    IdempotencyConflictError,
    IdempotencyDecision,
    assert_idempotent_or_record,
    normalize_idempotency_key,
)
from request_lifecycle.lifecycle.lock import (
    LOCK_TTL_MS,
    LockConflictError,
    LockPatch,
    acquire_lock,
    is_lock_active,
    is_lock_expired,
    release_lock,
)
from request_lifecycle.lifecycle.sync_policy import needs_repair
from request_lifecycle.lifecycle.tags import (
    REQUIRED_TAG_KEYS,
    MissingRequiredTagError,
    RequestForTags,
    assert_required_tags_present,
    build_server_authoritative_tags,
    inject_server_authoritative_tags,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "CreateIdempotencyCache",
    "DESTROY_STALE_MINUTES",
    "IDEMPOTENCY_WINDOW_MS",
    "IdempotencyConflictError",
    "IdempotencyDecision",
    "LOCK_TTL_MS",
    "LockConflictError",
    "LockPatch",
    "MissingRequiredTagError",
    "REQUIRED_TAG_KEYS",
    "RequestForTags",
    "acquire_lock",
    "assert_idempotent_or_record",
    "assert_required_tags_present",
    "build_audit_events",
    "build_audit_export",
    "build_server_authoritative_tags",
    "derive_lifecycle_status",
    "dump_audit_export",
    "inject_server_authoritative_tags",
    "is_destroy_run_failed",
    "is_destroy_run_stale",
    "is_lock_active",
    "is_lock_expired",
    "needs_repair",
    "normalize_idempotency_key",
    "release_lock",
]
