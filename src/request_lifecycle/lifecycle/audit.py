"""Audit trail reconstruction.

The audit log is derived from request facts on every read; nothing here is
stored. Output order is chronological, and equal timestamps are ordered by a
fixed event-type priority and then by attempt number, so identical input
always produces an identical list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from request_lifecycle.domain.runs import RUN_KINDS, Attempt, Conclusion, RunKind
from request_lifecycle.domain.snapshot import RequestSnapshot, as_snapshot
from request_lifecycle.lifecycle.lock import is_lock_expired
from request_lifecycle.lifecycle.tags import CREATED_BY_TAG
from request_lifecycle.utils.serialization import dumps
from request_lifecycle.utils.time import isoformat_z, parse_timestamp, utc_now

APPROVED_STEP = "Approved"
MERGED_STEP = "Merged"
CONFIGURATION_UPDATED_STEP = "Configuration updated"


class AuditEventType(str, Enum):
    REQUEST_CREATED = "request_created"
    PLAN_DISPATCHED = "plan_dispatched"
    PLAN_SUCCEEDED = "plan_succeeded"
    PLAN_FAILED = "plan_failed"
    APPLY_DISPATCHED = "apply_dispatched"
    APPLY_SUCCEEDED = "apply_succeeded"
    APPLY_FAILED = "apply_failed"
    DESTROY_DISPATCHED = "destroy_dispatched"
    DESTROY_SUCCEEDED = "destroy_succeeded"
    DESTROY_FAILED = "destroy_failed"
    REQUEST_APPROVED = "request_approved"
    PR_MERGED = "pr_merged"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_EXPIRED = "lock_expired"
    CONFIGURATION_UPDATED = "configuration_updated"


# Tie-break for events sharing a timestamp (lower sorts first).
_EVENT_PRIORITY: dict[AuditEventType, int] = {
    AuditEventType.REQUEST_CREATED: 0,
    AuditEventType.LOCK_ACQUIRED: 1,
    AuditEventType.LOCK_EXPIRED: 2,
    AuditEventType.PLAN_DISPATCHED: 10,
    AuditEventType.PLAN_SUCCEEDED: 11,
    AuditEventType.PLAN_FAILED: 12,
    AuditEventType.CONFIGURATION_UPDATED: 15,
    AuditEventType.REQUEST_APPROVED: 20,
    AuditEventType.PR_MERGED: 21,
    AuditEventType.APPLY_DISPATCHED: 30,
    AuditEventType.APPLY_SUCCEEDED: 31,
    AuditEventType.APPLY_FAILED: 32,
    AuditEventType.DESTROY_DISPATCHED: 40,
    AuditEventType.DESTROY_SUCCEEDED: 41,
    AuditEventType.DESTROY_FAILED: 42,
}

_DISPATCHED = {
    RunKind.PLAN: AuditEventType.PLAN_DISPATCHED,
    RunKind.APPLY: AuditEventType.APPLY_DISPATCHED,
    RunKind.DESTROY: AuditEventType.DESTROY_DISPATCHED,
}
_SUCCEEDED = {
    RunKind.PLAN: AuditEventType.PLAN_SUCCEEDED,
    RunKind.APPLY: AuditEventType.APPLY_SUCCEEDED,
    RunKind.DESTROY: AuditEventType.DESTROY_SUCCEEDED,
}
_FAILED = {
    RunKind.PLAN: AuditEventType.PLAN_FAILED,
    RunKind.APPLY: AuditEventType.APPLY_FAILED,
    RunKind.DESTROY: AuditEventType.DESTROY_FAILED,
}
_LABELS = {RunKind.PLAN: "Plan", RunKind.APPLY: "Deploy", RunKind.DESTROY: "Destroy"}


@dataclass(frozen=True)
class AuditEvent:
    type: AuditEventType
    at: datetime
    summary: str
    actor: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "at": isoformat_z(self.at),
            "type": self.type.value,
            "summary": self.summary,
            "meta": dict(self.meta),
        }
        if self.actor is not None:
            payload["actor"] = self.actor
        return payload


def _attempt_meta(kind: RunKind, attempt: Attempt) -> dict[str, Any]:
    meta: dict[str, Any] = {"kind": kind.value, "attempt": attempt.attempt}
    if attempt.run_id is not None:
        meta["runId"] = attempt.run_id
    if attempt.url is not None:
        meta["url"] = attempt.url
    if attempt.ref is not None:
        meta["ref"] = attempt.ref
    if attempt.head_sha is not None:
        meta["headSha"] = attempt.head_sha
    return meta


def _attempt_events(
    kind: RunKind,
    attempt: Attempt,
    fallback_at: datetime | None,
) -> list[AuditEvent]:
    meta = _attempt_meta(kind, attempt)
    label = _LABELS[kind]
    events: list[AuditEvent] = []
    if attempt.dispatched_at is not None:
        events.append(
            AuditEvent(
                type=_DISPATCHED[kind],
                at=attempt.dispatched_at,
                summary=f"{label} dispatched",
                actor=attempt.actor,
                meta=dict(meta),
            )
        )
    conclusion = attempt.conclusion
    if conclusion is None:
        return events

    succeeded = conclusion == Conclusion.SUCCESS
    completion_meta = {**meta, "conclusion": conclusion}
    if attempt.completed_at is not None:
        at = attempt.completed_at
        if attempt.dispatched_at is not None:
            elapsed = attempt.completed_at - attempt.dispatched_at
            completion_meta["durationMs"] = elapsed // timedelta(milliseconds=1)
    else:
        # Outcome known, completion time not: pin to dispatch (or the request's
        # last update) and flag it.
        completion_meta["missingCompletedAt"] = True
        at = attempt.dispatched_at or fallback_at
        if at is None:
            return events

    events.append(
        AuditEvent(
            type=_SUCCEEDED[kind] if succeeded else _FAILED[kind],
            at=at,
            summary=f"{label} succeeded" if succeeded else f"{label} failed ({conclusion})",
            actor=attempt.actor,
            meta=completion_meta,
        )
    )
    return events


def _timeline_step_at(snapshot: RequestSnapshot, step: str) -> datetime | None:
    for entry in snapshot.timeline:
        if entry.step == step and entry.at is not None:
            return entry.at
    return None


def _sort_key(event: AuditEvent) -> tuple[datetime, int, int]:
    return (
        event.at,
        _EVENT_PRIORITY.get(event.type, 100),
        int(event.meta.get("attempt", 0)),
    )


def build_audit_events(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> list[AuditEvent]:
    """Reconstruct the chronological audit trail for a request.

    Approval and merge events use their recorded timestamps (falling back to
    the matching timeline step) and are omitted when neither exists; they are
    never stamped with the current time. ``now`` only decides whether a lock
    has expired.
    """
    snapshot = as_snapshot(request)
    current_time = now or utc_now()
    events: list[AuditEvent] = []

    if snapshot.created_at is not None:
        created_meta: dict[str, Any] = {}
        for key, value in (
            ("project", snapshot.project),
            ("environment", snapshot.environment),
            ("module", snapshot.module),
            ("targetRepo", snapshot.target_repo_slug),
        ):
            if value is not None:
                created_meta[key] = value
        events.append(
            AuditEvent(
                type=AuditEventType.REQUEST_CREATED,
                at=snapshot.created_at,
                summary="Request created",
                actor=snapshot.tags.get(CREATED_BY_TAG),
                meta=created_meta,
            )
        )

    for kind in RUN_KINDS:
        for attempt in snapshot.runs.ledger(kind).attempts:
            events.extend(_attempt_events(kind, attempt, snapshot.updated_at))

    for entry in snapshot.timeline:
        if entry.step == CONFIGURATION_UPDATED_STEP and entry.at is not None:
            meta = {"revision": entry.revision} if entry.revision is not None else {}
            events.append(
                AuditEvent(
                    type=AuditEventType.CONFIGURATION_UPDATED,
                    at=entry.at,
                    summary="Configuration updated",
                    meta=meta,
                )
            )

    approval = snapshot.approval
    if approval.approved:
        approved_at = approval.approved_at or _timeline_step_at(snapshot, APPROVED_STEP)
        if approved_at is not None:
            approval_meta: dict[str, Any] = {}
            if approval.approvers:
                approval_meta["approvers"] = list(approval.approvers)
            if snapshot.pr_number is not None:
                approval_meta["prNumber"] = snapshot.pr_number
            if snapshot.target_repo_slug is not None:
                approval_meta["targetRepo"] = snapshot.target_repo_slug
            events.append(
                AuditEvent(
                    type=AuditEventType.REQUEST_APPROVED,
                    at=approved_at,
                    summary="Request approved",
                    actor=approval.approvers[0] if approval.approvers else None,
                    meta=approval_meta,
                )
            )

    if snapshot.merged:
        merged_at = snapshot.pr.merged_at or _timeline_step_at(snapshot, MERGED_STEP)
        if merged_at is not None:
            merge_meta: dict[str, Any] = {}
            if snapshot.pr_number is not None:
                merge_meta["prNumber"] = snapshot.pr_number
            if snapshot.merged_sha is not None:
                merge_meta["mergedSha"] = snapshot.merged_sha
            events.append(
                AuditEvent(
                    type=AuditEventType.PR_MERGED,
                    at=merged_at,
                    summary="PR merged",
                    actor=snapshot.pr.merged_by,
                    meta=merge_meta,
                )
            )

    lock = snapshot.lock
    if lock is not None:
        lock_meta = {"holder": lock.holder, "operation": lock.operation}
        acquired_at = parse_timestamp(lock.acquired_at)
        if acquired_at is not None:
            events.append(
                AuditEvent(
                    type=AuditEventType.LOCK_ACQUIRED,
                    at=acquired_at,
                    summary=f"Lock acquired by {lock.holder} ({lock.operation})",
                    actor=lock.holder,
                    meta=dict(lock_meta),
                )
            )
        expires_at = parse_timestamp(lock.expires_at)
        if expires_at is not None and is_lock_expired(lock, current_time):
            events.append(
                AuditEvent(
                    type=AuditEventType.LOCK_EXPIRED,
                    at=expires_at,
                    summary="Lock expired",
                    meta=dict(lock_meta),
                )
            )

    events.sort(key=_sort_key)
    return events


def build_audit_export(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """Payload for an audit-log download: request id, generation time and events."""
    snapshot = as_snapshot(request)
    generated_at = now or utc_now()
    return {
        "requestId": snapshot.id,
        "generatedAt": isoformat_z(generated_at),
        "events": [event.to_dict() for event in build_audit_events(snapshot, generated_at)],
    }


def dump_audit_export(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> str:
    return dumps(build_audit_export(request, now))
