"""Canonical lifecycle status values and their display metadata."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

StatusTone = Literal["success", "warning", "info", "destructive", "muted"]


class LifecycleStatus(str, Enum):
    REQUEST_CREATED = "request_created"
    PLANNING = "planning"
    PLAN_READY = "plan_ready"
    APPROVED = "approved"
    MERGED = "merged"
    APPLYING = "applying"
    APPLIED = "applied"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusMeta:
    key: LifecycleStatus
    label: str
    tone: StatusTone
    is_terminal: bool


_STATUS_META: dict[LifecycleStatus, StatusMeta] = {
    LifecycleStatus.REQUEST_CREATED: StatusMeta(
        LifecycleStatus.REQUEST_CREATED, "Request created", "info", False
    ),
    LifecycleStatus.PLANNING: StatusMeta(
        LifecycleStatus.PLANNING, "Planning in progress", "info", False
    ),
    LifecycleStatus.PLAN_READY: StatusMeta(
        LifecycleStatus.PLAN_READY, "Plan ready", "warning", False
    ),
    LifecycleStatus.APPROVED: StatusMeta(LifecycleStatus.APPROVED, "Approved", "info", False),
    LifecycleStatus.MERGED: StatusMeta(
        LifecycleStatus.MERGED, "Pull request merged", "info", False
    ),
    LifecycleStatus.APPLYING: StatusMeta(
        LifecycleStatus.APPLYING, "Deployment in progress", "info", False
    ),
    LifecycleStatus.APPLIED: StatusMeta(
        LifecycleStatus.APPLIED, "Deployment completed", "success", False
    ),
    LifecycleStatus.DESTROYING: StatusMeta(
        LifecycleStatus.DESTROYING, "Destroying", "warning", False
    ),
    LifecycleStatus.DESTROYED: StatusMeta(LifecycleStatus.DESTROYED, "Destroyed", "muted", True),
    LifecycleStatus.FAILED: StatusMeta(LifecycleStatus.FAILED, "Failed", "destructive", True),
}


def status_meta(status: LifecycleStatus | str) -> StatusMeta:
    """Display metadata for a status; unknown strings fall back to ``request_created``."""
    try:
        key = LifecycleStatus(status)
    except ValueError:
        key = LifecycleStatus.REQUEST_CREATED
    return _STATUS_META[key]


def is_terminal_status(status: LifecycleStatus | str) -> bool:
    return status_meta(status).is_terminal
