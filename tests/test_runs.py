from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from request_lifecycle.domain.runs import (
    Attempt,
    AttemptStatus,
    OperationLedger,
    RequestRuns,
    RunKind,
    attach_run_id,
    check_current_attempt_exists,
    empty_runs,
    ensure_runs,
    get_attempt_by_run_id,
    get_current_attempt_strict,
    is_attempt_active,
    is_attempt_in_flight,
    needs_reconcile,
    reconcile_attempt,
    record_dispatch,
)

DISPATCHED_AT = "2026-02-01T10:00:00.000Z"


def _attempt(**overrides) -> Attempt:
    data = {"attempt": 1, "status": "queued", "dispatchedAt": DISPATCHED_AT}
    data.update(overrides)
    return Attempt.model_validate(data)


def _runs_with(kind: RunKind, *attempts: Attempt) -> RequestRuns:
    ledger = OperationLedger(
        current_attempt=max((a.attempt for a in attempts), default=0),
        attempts=attempts,
    )
    return empty_runs().with_ledger(kind, ledger)


def test_needs_reconcile_when_conclusion_missing() -> None:
    assert needs_reconcile(_attempt(runId=12345)) is True


def test_needs_reconcile_when_completed_at_missing() -> None:
    assert needs_reconcile(_attempt(runId=123, conclusion="success")) is True


def test_needs_reconcile_false_once_complete() -> None:
    attempt = _attempt(
        runId=123,
        conclusion="success",
        completedAt="2026-02-01T10:05:00.000Z",
    )
    assert needs_reconcile(attempt) is False


def test_needs_reconcile_false_without_attempt_or_run_id() -> None:
    assert needs_reconcile(None) is False
    assert needs_reconcile(_attempt()) is False
    assert needs_reconcile(_attempt(conclusion="failure")) is False


def test_unrecognized_status_is_normalized_to_unknown() -> None:
    attempt = _attempt(runId=1, status="waiting_for_runner")
    assert attempt.status is AttemptStatus.UNKNOWN
    assert is_attempt_in_flight(attempt)
    assert not is_attempt_active(attempt)


def test_in_flight_ignores_status_text() -> None:
    assert is_attempt_in_flight(_attempt(runId=7, status="completed"))
    assert not is_attempt_in_flight(_attempt(runId=7, conclusion="success"))
    assert not is_attempt_in_flight(_attempt(status="in_progress"))


def test_blank_conclusion_is_treated_as_absent() -> None:
    assert _attempt(runId=1, conclusion="  ").conclusion is None


def test_garbled_completed_at_is_treated_as_unknown() -> None:
    attempt = _attempt(runId=1, conclusion="success", completedAt="not-a-date")
    assert attempt.completed_at is None
    assert needs_reconcile(attempt)


def test_garbled_dispatched_at_is_treated_as_unknown() -> None:
    attempt = _attempt(runId=1, dispatchedAt="yesterday-ish")
    assert attempt.dispatched_at is None
    assert "dispatchedAt" not in attempt.to_document()
    assert is_attempt_in_flight(attempt)


def test_naive_dispatched_at_is_read_as_utc() -> None:
    attempt = _attempt(dispatchedAt=datetime(2026, 2, 1, 10, 0))
    assert attempt.dispatched_at.tzinfo == timezone.utc


def test_current_attempt_strict_has_no_fallback() -> None:
    first = _attempt(attempt=1, runId=1)
    second = _attempt(attempt=2, runId=2)
    runs = _runs_with(RunKind.APPLY, first, second)
    assert get_current_attempt_strict(runs, RunKind.APPLY) == second
    assert get_current_attempt_strict(runs, "plan") is None

    dangling = runs.with_ledger(
        RunKind.APPLY, OperationLedger(current_attempt=3, attempts=(first, second))
    )
    assert get_current_attempt_strict(dangling, RunKind.APPLY) is None


def test_check_current_attempt_exists_logs_violation(caplog: pytest.LogCaptureFixture) -> None:
    runs = empty_runs().with_ledger(
        RunKind.PLAN, OperationLedger(current_attempt=2, attempts=(_attempt(attempt=1),))
    )
    with caplog.at_level(logging.ERROR, logger="request_lifecycle.domain.runs"):
        assert check_current_attempt_exists(runs, RunKind.PLAN) is False
    assert "currentAttempt=2" in caplog.text
    assert check_current_attempt_exists(runs, RunKind.APPLY) is True


def test_get_attempt_by_run_id() -> None:
    runs = _runs_with(RunKind.DESTROY, _attempt(runId=99))
    found = get_attempt_by_run_id(runs, 99)
    assert found is not None
    kind, attempt = found
    assert kind is RunKind.DESTROY
    assert attempt.run_id == 99
    assert get_attempt_by_run_id(runs, 100) is None


def test_ensure_runs_fills_missing_ledgers() -> None:
    document = {"id": "req-1", "runs": {"plan": {"currentAttempt": 1, "attempts": [{"attempt": 1}]}}}
    ensure_runs(document)
    assert document["runs"]["plan"]["currentAttempt"] == 1
    assert document["runs"]["apply"] == {"currentAttempt": 0, "attempts": []}
    assert document["runs"]["destroy"] == {"currentAttempt": 0, "attempts": []}

    bare: dict = {"id": "req-2"}
    ensure_runs(bare)
    assert set(bare["runs"]) == {"plan", "apply", "destroy"}


def test_record_dispatch_appends_and_moves_current(now: datetime) -> None:
    runs = record_dispatch(empty_runs(), RunKind.PLAN, now=now, actor="alice")
    runs = record_dispatch(runs, RunKind.PLAN, run_id=42, url="https://ci/42", now=now)

    ledger = runs.plan
    assert ledger.current_attempt == 2
    assert [a.attempt for a in ledger.attempts] == [1, 2]
    assert ledger.attempts[0].actor == "alice"
    assert ledger.attempts[1].run_id == 42
    assert ledger.attempts[1].status is AttemptStatus.QUEUED
    assert runs.apply.current_attempt == 0


def test_attach_run_id() -> None:
    runs = _runs_with(RunKind.APPLY, _attempt())
    updated = attach_run_id(runs, RunKind.APPLY, 1, 555, url="https://ci/555")
    assert updated is not None
    assert updated.apply.attempts[0].run_id == 555
    assert updated.apply.attempts[0].url == "https://ci/555"
    assert updated.apply.current_attempt == 1

    assert attach_run_id(updated, RunKind.APPLY, 1, 555, url="https://ci/555") is None
    assert attach_run_id(updated, RunKind.APPLY, 2, 555) is None


def test_attach_run_id_keeps_existing_run(caplog: pytest.LogCaptureFixture) -> None:
    runs = _runs_with(RunKind.APPLY, _attempt(runId=1))
    with caplog.at_level(logging.WARNING, logger="request_lifecycle.domain.runs"):
        assert attach_run_id(runs, RunKind.APPLY, 1, 2) is None
    assert "already tracks run 1" in caplog.text


def test_reconcile_sets_completed_at_from_updated_at() -> None:
    runs = _runs_with(RunKind.PLAN, _attempt(runId=12345))
    result = reconcile_attempt(
        runs,
        RunKind.PLAN,
        12345,
        status="completed",
        conclusion="success",
        updated_at="2026-02-01T10:05:30.000Z",
    )
    assert result is not None
    attempt = result.plan.attempts[0]
    assert attempt.status is AttemptStatus.COMPLETED
    assert attempt.conclusion == "success"
    assert attempt.completed_at == datetime(2026, 2, 1, 10, 5, 30, tzinfo=timezone.utc)
    assert not needs_reconcile(attempt)


def test_reconcile_never_clears_completed_at() -> None:
    runs = _runs_with(
        RunKind.PLAN,
        _attempt(
            runId=1,
            status="completed",
            conclusion="success",
            completedAt="2026-02-01T10:04:00.000Z",
        ),
    )
    result = reconcile_attempt(runs, RunKind.PLAN, 1, status="completed", conclusion="success")
    assert result is None
    assert runs.plan.attempts[0].completed_at is not None


def test_reconcile_does_not_set_completed_at_while_running() -> None:
    runs = _runs_with(RunKind.PLAN, _attempt(runId=1))
    result = reconcile_attempt(
        runs, RunKind.PLAN, 1, status="in_progress", updated_at="2026-02-01T10:05:30.000Z"
    )
    assert result is not None
    assert result.plan.attempts[0].status is AttemptStatus.IN_PROGRESS
    assert result.plan.attempts[0].completed_at is None


def test_reconcile_without_status_keeps_existing_status() -> None:
    runs = _runs_with(RunKind.PLAN, _attempt(runId=1, status="in_progress"))
    result = reconcile_attempt(runs, RunKind.PLAN, 1, conclusion="cancelled")
    assert result is not None
    attempt = result.plan.attempts[0]
    assert attempt.status is AttemptStatus.IN_PROGRESS
    assert attempt.conclusion == "cancelled"
    assert attempt.completed_at is None


def test_reconcile_is_monotonic() -> None:
    completed = _runs_with(
        RunKind.APPLY, _attempt(runId=1, status="completed", conclusion="failure")
    )
    assert reconcile_attempt(completed, RunKind.APPLY, 1, status="in_progress") is None
    assert reconcile_attempt(completed, RunKind.APPLY, 1, status="weird", conclusion="failure") is None
    assert reconcile_attempt(completed, RunKind.APPLY, 1, status="completed") is None
    assert reconcile_attempt(completed, RunKind.APPLY, 404, status="completed") is None


def test_ledger_round_trips_to_document(now: datetime) -> None:
    runs = record_dispatch(empty_runs(), RunKind.DESTROY, run_id=9, now=now)
    document = runs.to_document()
    assert document["destroy"]["currentAttempt"] == 1
    assert document["destroy"]["attempts"][0]["runId"] == 9
    assert "completedAt" not in document["destroy"]["attempts"][0]
    assert RequestRuns.model_validate(document) == runs
