from datetime import timedelta

import pytest

from request_lifecycle.lifecycle.lock import LockConflictError
from request_lifecycle.storage.db import (
    RequestNotFoundError,
    SqliteRequestStore,
    VersionConflictError,
)
from request_lifecycle.storage.locking import acquire_request_lock, release_request_lock
from request_lifecycle.utils.time import isoformat_z


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteRequestStore(str(tmp_path / "requests.db"))
    sqlite_store.create({"id": "req-1", "project": "core"})
    yield sqlite_store
    sqlite_store.close()


def test_acquire_persists_lock(store, now):
    document = acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)

    assert document["lock"]["holder"] == "alice"
    stored = store.get("req-1")
    assert stored.version == 2
    assert stored.document["lock"]["expiresAt"] == "2026-02-01T12:02:00.000Z"


def test_reentry_does_not_write(store, now):
    acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)
    acquire_request_lock(
        store, "req-1", operation="plan", holder="alice", now=now + timedelta(seconds=5)
    )
    assert store.get("req-1").version == 2


def test_second_holder_conflicts(store, now):
    acquire_request_lock(store, "req-1", operation="apply", holder="alice", now=now)
    with pytest.raises(LockConflictError) as excinfo:
        acquire_request_lock(store, "req-1", operation="plan", holder="bob", now=now)
    assert excinfo.value.holder == "alice"
    assert excinfo.value.operation == "apply"


def test_lost_race_rereads_and_surfaces_winner(store, now, monkeypatch):
    original_cas = store.compare_and_swap
    calls = {"count": 0}

    def racing_cas(request_id, document, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another holder commits first.
            stored = store.get(request_id)
            winner = {
                **stored.document,
                "lock": {
                    "holder": "bob",
                    "operation": "destroy",
                    "acquiredAt": isoformat_z(now),
                    "expiresAt": isoformat_z(now + timedelta(minutes=2)),
                },
            }
            assert original_cas(request_id, winner, stored.version)
        return original_cas(request_id, document, expected_version)

    monkeypatch.setattr(store, "compare_and_swap", racing_cas)

    with pytest.raises(LockConflictError) as excinfo:
        acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)
    assert excinfo.value.holder == "bob"
    assert store.get("req-1").document["lock"]["holder"] == "bob"


def test_retries_exhausted(store, now, monkeypatch):
    monkeypatch.setattr(store, "compare_and_swap", lambda *args: False)
    with pytest.raises(VersionConflictError):
        acquire_request_lock(
            store, "req-1", operation="plan", holder="alice", now=now, max_retries=2
        )


def test_default_retries_come_from_settings(store, now, monkeypatch):
    monkeypatch.setenv("LOCK_CAS_MAX_RETRIES", "0")
    calls = {"count": 0}

    def failing_cas(*args):
        calls["count"] += 1
        return False

    monkeypatch.setattr(store, "compare_and_swap", failing_cas)
    with pytest.raises(VersionConflictError):
        acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)
    assert calls["count"] == 1


def test_release_by_holder(store, now):
    acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)
    assert release_request_lock(store, "req-1", "alice") is True
    assert "lock" not in store.get("req-1").document


def test_release_by_other_holder_is_refused(store, now):
    acquire_request_lock(store, "req-1", operation="plan", holder="alice", now=now)
    assert release_request_lock(store, "req-1", "bob") is False
    assert store.get("req-1").document["lock"]["holder"] == "alice"


def test_release_without_lock(store):
    assert release_request_lock(store, "req-1", "alice") is True
    assert store.get("req-1").version == 1


def test_missing_request(store, now):
    with pytest.raises(RequestNotFoundError):
        acquire_request_lock(store, "nope", operation="plan", holder="alice", now=now)
    with pytest.raises(RequestNotFoundError):
        release_request_lock(store, "nope", "alice")
