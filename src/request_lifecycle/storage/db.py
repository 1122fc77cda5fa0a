"""SQLite request store with optimistic (version-checked) writes."""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from request_lifecycle.utils.serialization import json_default
from request_lifecycle.utils.time import utc_now_iso


class RequestNotFoundError(KeyError):
    """Raised when a request id has no stored document."""


class VersionConflictError(RuntimeError):
    """Raised when a conditional write loses to a concurrent writer."""

    def __init__(self, request_id: str, expected_version: int) -> None:
        super().__init__(
            f"Version conflict while saving request {request_id} (expected version {expected_version})"
        )
        self.request_id = request_id
        self.expected_version = expected_version


@dataclass(frozen=True)
class StoredRequest:
    request_id: str
    version: int
    document: dict[str, Any]


def _encode(document: Mapping[str, Any]) -> str:
    return json.dumps(document, default=json_default, sort_keys=True)


class SqliteRequestStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS requests (
                request_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                document TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def create(self, document: Mapping[str, Any]) -> StoredRequest:
        request_id = document.get("id")
        if not isinstance(request_id, str) or not request_id:
            raise ValueError("Request document requires a non-empty string 'id'")
        with self._lock:
            self._conn.execute(
                "INSERT INTO requests (request_id, version, document, updated_at) "
                "VALUES (?, 1, ?, ?)",
                (request_id, _encode(document), utc_now_iso()),
            )
            self._conn.commit()
        return StoredRequest(request_id=request_id, version=1, document=dict(document))

    def get(self, request_id: str) -> StoredRequest | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT request_id, version, document FROM requests WHERE request_id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        return StoredRequest(
            request_id=row["request_id"],
            version=row["version"],
            document=json.loads(row["document"]),
        )

    def compare_and_swap(
        self,
        request_id: str,
        document: Mapping[str, Any],
        expected_version: int,
    ) -> bool:
        """Write ``document`` only if the stored version is still ``expected_version``.

        Returns True if exactly one row was updated (the caller won the race),
        False otherwise. The version is bumped on every successful write.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE requests SET document = ?, version = version + 1, updated_at = ? "
                "WHERE request_id = ? AND version = ?",
                (_encode(document), utc_now_iso(), request_id, expected_version),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def update(
        self,
        request_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> tuple[dict[str, Any], bool]:
        """Read, mutate and conditionally write a request.

        ``mutate`` receives a private copy of the stored document. When it
        returns an equal document no write happens and ``saved`` is False.
        """
        current = self.get(request_id)
        if current is None:
            raise RequestNotFoundError(request_id)
        updated = mutate(copy.deepcopy(current.document))
        if updated == current.document:
            return current.document, False
        if not self.compare_and_swap(request_id, updated, current.version):
            raise VersionConflictError(request_id, current.version)
        return updated, True
