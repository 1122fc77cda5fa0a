"""Canonical lifecycle status derivation.

Status is never stored; it is a pure function of the request's run ledgers,
approval and merge facts. Rules are checked in priority order and the first
match wins:

    destroy > apply/plan failure > apply running/success > merged > approved
    > plan succeeded > planning > request_created

so a later-stage failure outranks an earlier-stage success and a dispatched
destroy outranks everything.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping

from request_lifecycle.domain.runs import (
    RUN_KINDS,
    Attempt,
    AttemptStatus,
    Conclusion,
    RunKind,
    check_current_attempt_exists,
    get_current_attempt_strict,
    is_attempt_in_flight,
    is_failed_conclusion,
)
from request_lifecycle.domain.snapshot import RequestSnapshot, as_snapshot
from request_lifecycle.domain.status import LifecycleStatus
from request_lifecycle.utils.time import ensure_utc, utc_now

# A destroy run with no conclusion this long after dispatch is reported as failed.
DESTROY_STALE_MINUTES = 15
DESTROY_STALE_WINDOW = timedelta(minutes=DESTROY_STALE_MINUTES)


def _is_stale(attempt: Attempt, now: datetime) -> bool:
    # Without a usable dispatch time there is nothing to measure staleness from.
    if attempt.dispatched_at is None:
        return False
    return ensure_utc(now) - attempt.dispatched_at > DESTROY_STALE_WINDOW


def derive_lifecycle_status(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> LifecycleStatus:
    snapshot = as_snapshot(request)
    current_time = now or utc_now()
    runs = snapshot.runs
    for kind in RUN_KINDS:
        check_current_attempt_exists(runs, kind)

    plan = get_current_attempt_strict(runs, RunKind.PLAN)
    apply = get_current_attempt_strict(runs, RunKind.APPLY)
    destroy = get_current_attempt_strict(runs, RunKind.DESTROY)

    if destroy is not None:
        if is_failed_conclusion(destroy.conclusion):
            return LifecycleStatus.FAILED
        if destroy.conclusion == Conclusion.SUCCESS:
            return LifecycleStatus.DESTROYED
        if is_attempt_in_flight(destroy):
            if _is_stale(destroy, current_time):
                return LifecycleStatus.FAILED
            return LifecycleStatus.DESTROYING

    if apply is not None and is_failed_conclusion(apply.conclusion):
        return LifecycleStatus.FAILED
    if plan is not None and is_failed_conclusion(plan.conclusion):
        return LifecycleStatus.FAILED

    if is_attempt_in_flight(apply):
        return LifecycleStatus.APPLYING
    if apply is not None and apply.conclusion == Conclusion.SUCCESS:
        return LifecycleStatus.APPLIED

    if snapshot.merged:
        return LifecycleStatus.MERGED
    if snapshot.approval.approved:
        return LifecycleStatus.APPROVED

    if plan is not None and plan.conclusion == Conclusion.SUCCESS:
        return LifecycleStatus.PLAN_READY
    if plan is not None and plan.status in (AttemptStatus.IN_PROGRESS, AttemptStatus.QUEUED):
        return LifecycleStatus.PLANNING
    if snapshot.pr.open:
        return LifecycleStatus.PLANNING

    return LifecycleStatus.REQUEST_CREATED


def is_destroy_run_failed(request: RequestSnapshot | Mapping[str, Any]) -> bool:
    destroy = get_current_attempt_strict(as_snapshot(request).runs, RunKind.DESTROY)
    return destroy is not None and is_failed_conclusion(destroy.conclusion)


def is_destroy_run_stale(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> bool:
    destroy = get_current_attempt_strict(as_snapshot(request).runs, RunKind.DESTROY)
    if not is_attempt_in_flight(destroy):
        return False
    return _is_stale(destroy, now or utc_now())
