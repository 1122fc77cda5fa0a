"""When a sync pass should call out to CI/source control to repair facts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from request_lifecycle.domain.runs import RUN_KINDS, get_current_attempt_strict
from request_lifecycle.domain.snapshot import RequestSnapshot, as_snapshot
from request_lifecycle.lifecycle.derive import is_destroy_run_stale


def _has_run_facts(snapshot: RequestSnapshot) -> bool:
    for kind in RUN_KINDS:
        if get_current_attempt_strict(snapshot.runs, kind) is None:
            return False
    return True


def needs_repair(
    request: RequestSnapshot | Mapping[str, Any],
    now: datetime | None = None,
) -> bool:
    """True only when the UI would be stuck without fresh external facts.

    Requires a known target repository. Repair is wanted when the destroy
    run looks stale, when a branch exists but PR facts are missing, or when a
    PR (or merge) exists but some operation has no current attempt.
    """
    snapshot = as_snapshot(request)
    if not snapshot.target_owner or not snapshot.target_repo:
        return False

    if is_destroy_run_stale(snapshot, now):
        return True

    has_pr = snapshot.pr_number is not None
    if not has_pr and snapshot.branch_name:
        return True

    if has_pr or snapshot.merged_sha:
        return not _has_run_facts(snapshot)

    return False
