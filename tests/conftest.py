from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Callable

import pytest

from request_lifecycle import config

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep unit runs from picking up a developer's .env log file.
    os.environ.setdefault("LOG_LEVEL", "WARNING")


@pytest.fixture(autouse=True)
def _fresh_settings() -> None:
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_attempt() -> Callable[..., dict[str, Any]]:
    def _make(**overrides: Any) -> dict[str, Any]:
        attempt: dict[str, Any] = {
            "attempt": 1,
            "status": "queued",
            "dispatchedAt": "2026-02-01T10:00:00.000Z",
        }
        attempt.update(overrides)
        return attempt

    return _make


@pytest.fixture
def make_request() -> Callable[..., dict[str, Any]]:
    """Build a persisted-shape request document with empty ledgers."""

    def _make(
        *,
        plan: list[dict[str, Any]] | None = None,
        apply: list[dict[str, Any]] | None = None,
        destroy: list[dict[str, Any]] | None = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        def ledger(attempts: list[dict[str, Any]] | None) -> dict[str, Any]:
            attempts = attempts or []
            current = max((a["attempt"] for a in attempts), default=0)
            return {"currentAttempt": current, "attempts": attempts}

        request: dict[str, Any] = {
            "id": "req-1",
            "receivedAt": "2026-02-01T09:00:00.000Z",
            "createdAt": "2026-02-01T09:00:00.000Z",
            "runs": {
                "plan": ledger(plan),
                "apply": ledger(apply),
                "destroy": ledger(destroy),
            },
        }
        request.update(overrides)
        return request

    return _make
