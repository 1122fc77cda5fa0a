"""Run ledger: per-operation attempt history for plan, apply and destroy.

Each operation keeps an append-only list of attempts. ``current_attempt`` is
moved only by :func:`record_dispatch`; reconciliation from CI facts patches
an existing attempt in place (by run id) and never changes it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, MutableMapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from request_lifecycle.utils.time import ensure_utc, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class RunKind(str, Enum):
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"


RUN_KINDS: tuple[RunKind, ...] = (RunKind.PLAN, RunKind.APPLY, RunKind.DESTROY)


class AttemptStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


class Conclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    STARTUP_FAILURE = "startup_failure"
    STALE = "stale"


FAILED_CONCLUSIONS: frozenset[str] = frozenset(
    {
        Conclusion.FAILURE.value,
        Conclusion.CANCELLED.value,
        Conclusion.TIMED_OUT.value,
        Conclusion.ACTION_REQUIRED.value,
        Conclusion.STARTUP_FAILURE.value,
        Conclusion.STALE.value,
    }
)


def _status_from_ci(value: object) -> AttemptStatus:
    if isinstance(value, AttemptStatus):
        return value
    try:
        return AttemptStatus(str(value))
    except ValueError:
        return AttemptStatus.UNKNOWN


def _non_empty(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


class _LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Attempt(_LedgerModel):
    attempt: int = Field(ge=1)
    run_id: int | None = None
    status: AttemptStatus = AttemptStatus.QUEUED
    conclusion: str | None = None
    dispatched_at: datetime | None = None
    completed_at: datetime | None = None
    url: str | None = None
    head_sha: str | None = None
    ref: str | None = None
    actor: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> AttemptStatus:
        return _status_from_ci(v)

    @field_validator("conclusion", mode="before")
    @classmethod
    def _normalize_conclusion(cls, v: Any) -> str | None:
        if isinstance(v, Conclusion):
            return v.value
        return _non_empty(v)

    @field_validator("dispatched_at", "completed_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, v: Any) -> Any:
        # A garbled timestamp is treated as not known.
        if isinstance(v, str):
            return parse_timestamp(v)
        return v

    @field_validator("dispatched_at", "completed_at", mode="after")
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @property
    def in_flight(self) -> bool:
        return is_attempt_in_flight(self)


class OperationLedger(_LedgerModel):
    current_attempt: int = Field(default=0, ge=0)
    attempts: tuple[Attempt, ...] = ()

    @field_validator("attempts", mode="before")
    @classmethod
    def _ensure_sequence(cls, v: Any) -> Any:
        if v is None:
            return ()
        return v


class RequestRuns(_LedgerModel):
    plan: OperationLedger
    apply: OperationLedger
    destroy: OperationLedger

    def ledger(self, kind: RunKind | str) -> OperationLedger:
        return getattr(self, RunKind(kind).value)

    def with_ledger(self, kind: RunKind | str, ledger: OperationLedger) -> RequestRuns:
        return self.model_copy(update={RunKind(kind).value: ledger})


def empty_runs() -> RequestRuns:
    return RequestRuns(
        plan=OperationLedger(),
        apply=OperationLedger(),
        destroy=OperationLedger(),
    )


def ensure_runs(document: MutableMapping[str, Any]) -> None:
    """Give a raw request document empty ledgers for any missing operation.

    Mutates ``document`` in place. Call when a request is first created so the
    derivation functions can rely on all three ledgers being present.
    """
    runs = document.get("runs")
    if not isinstance(runs, dict):
        runs = {}
        document["runs"] = runs
    for kind in RUN_KINDS:
        ledger = runs.get(kind.value)
        if not isinstance(ledger, dict) or not isinstance(ledger.get("attempts"), list):
            runs[kind.value] = {"currentAttempt": 0, "attempts": []}


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def needs_reconcile(attempt: Attempt | None) -> bool:
    """True when a dispatched run still lacks its conclusion or completion time."""
    if attempt is None:
        return False
    return attempt.run_id is not None and (
        attempt.conclusion is None or attempt.completed_at is None
    )


def is_attempt_in_flight(attempt: Attempt | None) -> bool:
    # Status-agnostic: queued, in_progress and unrecognized statuses all count.
    if attempt is None:
        return False
    return attempt.run_id is not None and attempt.conclusion is None


def is_attempt_active(attempt: Attempt | None) -> bool:
    if attempt is None:
        return False
    return attempt.status in (AttemptStatus.QUEUED, AttemptStatus.IN_PROGRESS)


def is_failed_conclusion(conclusion: str | None) -> bool:
    return conclusion is not None and conclusion in FAILED_CONCLUSIONS


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_current_attempt_strict(runs: RequestRuns | None, kind: RunKind | str) -> Attempt | None:
    """Return the attempt numbered ``current_attempt``; no fallback to the latest entry."""
    if runs is None:
        return None
    ledger = runs.ledger(kind)
    if ledger.current_attempt == 0:
        return None
    for attempt in ledger.attempts:
        if attempt.attempt == ledger.current_attempt:
            return attempt
    return None


def check_current_attempt_exists(runs: RequestRuns | None, kind: RunKind | str) -> bool:
    if runs is None:
        return True
    ledger = runs.ledger(kind)
    if ledger.current_attempt == 0:
        return True
    if any(a.attempt == ledger.current_attempt for a in ledger.attempts):
        return True
    logger.error(
        "Run ledger invariant violated: %s currentAttempt=%d has no attempt record (attempts=%s)",
        RunKind(kind).value,
        ledger.current_attempt,
        [a.attempt for a in ledger.attempts],
    )
    return False


def get_attempt_by_run_id(
    runs: RequestRuns | None, run_id: int
) -> tuple[RunKind, Attempt] | None:
    if runs is None:
        return None
    for kind in RUN_KINDS:
        for attempt in runs.ledger(kind).attempts:
            if attempt.run_id == run_id:
                return kind, attempt
    return None


# ---------------------------------------------------------------------------
# Ledger updates (return new RequestRuns, never mutate)
# ---------------------------------------------------------------------------


def record_dispatch(
    runs: RequestRuns,
    kind: RunKind | str,
    *,
    run_id: int | None = None,
    url: str | None = None,
    actor: str | None = None,
    head_sha: str | None = None,
    ref: str | None = None,
    now: datetime | None = None,
) -> RequestRuns:
    """Append a queued attempt for a freshly dispatched workflow run.

    Call right after dispatch even if the run id is not known yet; it can be
    attached later with :func:`attach_run_id`.
    """
    ledger = runs.ledger(kind)
    next_number = ledger.current_attempt + 1
    record = Attempt(
        attempt=next_number,
        run_id=run_id,
        status=AttemptStatus.QUEUED,
        dispatched_at=now or utc_now(),
        url=url,
        actor=actor,
        head_sha=head_sha,
        ref=ref,
    )
    return runs.with_ledger(
        kind,
        OperationLedger(current_attempt=next_number, attempts=(*ledger.attempts, record)),
    )


def _replace_attempt(
    runs: RequestRuns, kind: RunKind | str, index: int, attempt: Attempt
) -> RequestRuns:
    ledger = runs.ledger(kind)
    attempts = list(ledger.attempts)
    attempts[index] = attempt
    return runs.with_ledger(kind, ledger.model_copy(update={"attempts": tuple(attempts)}))


def attach_run_id(
    runs: RequestRuns,
    kind: RunKind | str,
    attempt_number: int,
    run_id: int,
    url: str | None = None,
) -> RequestRuns | None:
    """Set the CI run id on an attempt. Returns None when nothing changes."""
    ledger = runs.ledger(kind)
    index = next(
        (i for i, a in enumerate(ledger.attempts) if a.attempt == attempt_number), None
    )
    if index is None:
        return None
    existing = ledger.attempts[index]
    if existing.run_id is not None and existing.run_id != run_id:
        logger.warning(
            "Attempt %s#%d already tracks run %s; ignoring run %s",
            RunKind(kind).value,
            attempt_number,
            existing.run_id,
            run_id,
        )
        return None
    if existing.run_id == run_id and (url is None or existing.url == url):
        return None
    update: dict[str, Any] = {"run_id": run_id}
    if url is not None:
        update["url"] = url
    return _replace_attempt(runs, kind, index, existing.model_copy(update=update))


def reconcile_attempt(
    runs: RequestRuns,
    kind: RunKind | str,
    run_id: int,
    *,
    status: str | None = None,
    conclusion: str | None = None,
    completed_at: str | datetime | None = None,
    updated_at: str | datetime | None = None,
    head_sha: str | None = None,
) -> RequestRuns | None:
    """Merge authoritative CI facts into the attempt tracking ``run_id``.

    Updates are monotonic: a completed attempt never goes back to queued or
    in_progress, a conclusion is never cleared, and ``completed_at`` is set at
    most once. When CI reports ``completed`` without ``completed_at`` the
    run's ``updated_at`` is used. Returns None when nothing changes.
    """
    ledger = runs.ledger(kind)
    index = next((i for i, a in enumerate(ledger.attempts) if a.run_id == run_id), None)
    if index is None:
        return None
    existing = ledger.attempts[index]
    next_status = existing.status if status is None else _status_from_ci(status)
    next_conclusion = _non_empty(conclusion)

    if existing.status is AttemptStatus.COMPLETED and next_status is not AttemptStatus.COMPLETED:
        return None
    if existing.conclusion is not None and next_conclusion is None:
        return None

    final_completed_at = existing.completed_at
    if final_completed_at is None and next_status is AttemptStatus.COMPLETED:
        final_completed_at = parse_timestamp(completed_at) or parse_timestamp(updated_at)

    update: dict[str, Any] = {"status": next_status, "completed_at": final_completed_at}
    if next_conclusion is not None:
        update["conclusion"] = next_conclusion
    if head_sha:
        update["head_sha"] = head_sha

    patched = existing.model_copy(update=update)
    if (
        patched.status == existing.status
        and patched.conclusion == existing.conclusion
        and patched.completed_at == existing.completed_at
    ):
        return None
    return _replace_attempt(runs, kind, index, patched)
