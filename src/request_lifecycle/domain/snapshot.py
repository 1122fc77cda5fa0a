"""Strict request snapshot read by the lifecycle engine.

Persisted request documents carry the same fact under several names
(``github.pr`` vs ``pr``, ``receivedAt`` vs ``createdAt``, ...).
:func:`normalize_request` resolves those once, so nothing downstream has to
know which field a fact came from.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from request_lifecycle.domain.runs import RUN_KINDS, RequestRuns
from request_lifecycle.utils.time import parse_timestamp


class MissingLedgerError(ValueError):
    """Raised when a request is read without all three run ledgers.

    This is a caller bug (the request was never initialised with
    ``ensure_runs``), not a state to derive a default status from.
    """


def _lenient_timestamp(v: Any) -> datetime | None:
    if v is None or v == "":
        return None
    return parse_timestamp(v)


class _SnapshotModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ApprovalInfo(_SnapshotModel):
    approved: bool = False
    approvers: tuple[str, ...] = ()
    approved_at: datetime | None = None

    @field_validator("approvers", mode="before")
    @classmethod
    def _ensure_list(cls, v: Any) -> Any:
        return () if v is None else v

    @field_validator("approved_at", mode="before")
    @classmethod
    def _parse_approved_at(cls, v: Any) -> datetime | None:
        return _lenient_timestamp(v)


class PrInfo(_SnapshotModel):
    merged: bool = False
    open: bool = False
    number: int | None = None
    merged_at: datetime | None = None
    merged_by: str | None = None
    head_sha: str | None = None

    @field_validator("merged", "open", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("merged_at", mode="before")
    @classmethod
    def _parse_merged_at(cls, v: Any) -> datetime | None:
        return _lenient_timestamp(v)


class RequestLock(_SnapshotModel):
    # Timestamps stay raw so an unparsable expiry can be represented (and treated as expired).
    holder: str
    operation: str
    expires_at: str
    acquired_at: str | None = None

    def to_document(self) -> dict[str, str]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TimelineEntry(_SnapshotModel):
    step: str | None = None
    at: datetime | None = None
    revision: int | None = None

    @field_validator("at", mode="before")
    @classmethod
    def _parse_at(cls, v: Any) -> datetime | None:
        return _lenient_timestamp(v)


class RequestSnapshot(_SnapshotModel):
    id: str | None = None
    project: str | None = None
    environment: str | None = None
    module: str | None = None
    template_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    runs: RequestRuns
    approval: ApprovalInfo = Field(default_factory=ApprovalInfo)
    pr: PrInfo = Field(default_factory=PrInfo)
    merged_sha: str | None = None
    lock: RequestLock | None = None
    timeline: tuple[TimelineEntry, ...] = ()
    target_owner: str | None = None
    target_repo: str | None = None
    branch_name: str | None = None
    pr_number: int | None = None
    revision: int | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, v: Any) -> datetime | None:
        return _lenient_timestamp(v)

    @field_validator("lock", mode="before")
    @classmethod
    def _drop_malformed_lock(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            try:
                return RequestLock.model_validate(v)
            except ValueError:
                return None
        return v

    @property
    def merged(self) -> bool:
        return self.pr.merged or bool(self.merged_sha)

    @property
    def target_repo_slug(self) -> str | None:
        if self.target_owner and self.target_repo:
            return f"{self.target_owner}/{self.target_repo}"
        return None


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first(*values: object) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _require_runs(document: Mapping[str, Any]) -> Mapping[str, Any]:
    runs = document.get("runs")
    if not isinstance(runs, Mapping):
        raise MissingLedgerError(
            f"Request {document.get('id')!r} has no run ledgers; initialise runs before reading status"
        )
    missing = [kind.value for kind in RUN_KINDS if not isinstance(runs.get(kind.value), Mapping)]
    if missing:
        raise MissingLedgerError(
            f"Request {document.get('id')!r} is missing run ledgers: {', '.join(missing)}"
        )
    return runs


def normalize_request(document: Mapping[str, Any]) -> RequestSnapshot:
    """Map a persisted request document onto :class:`RequestSnapshot`.

    Precedence when a fact has more than one home:

    - PR facts: ``github.pr`` wins over ``pr``; ``pullRequest.mergedAt`` and
      ``pullRequest.mergedBy`` only fill gaps.
    - PR number: top-level ``prNumber`` wins over the PR's ``number``.
    - Creation time: ``receivedAt`` wins over ``createdAt``.
    - Tags: ``config.tags``, string values only.

    Raises :class:`MissingLedgerError` when any of the plan/apply/destroy
    ledgers is absent.
    """
    runs = _require_runs(document)

    github_pr = _mapping(_mapping(document.get("github")).get("pr"))
    pr_doc = github_pr or _mapping(document.get("pr"))
    pull_request = _mapping(document.get("pullRequest"))
    config = _mapping(document.get("config"))
    tags = {
        str(key): value
        for key, value in _mapping(config.get("tags")).items()
        if isinstance(value, str)
    }
    timeline = document.get("timeline")

    data: dict[str, Any] = {
        "id": document.get("id"),
        "project": document.get("project"),
        "environment": document.get("environment"),
        "module": document.get("module"),
        "template_id": _first(document.get("templateId")),
        "created_at": _first(document.get("receivedAt"), document.get("createdAt")),
        "updated_at": document.get("updatedAt"),
        "tags": tags,
        "runs": runs,
        "approval": _mapping(document.get("approval")),
        "pr": {
            "merged": pr_doc.get("merged"),
            "open": pr_doc.get("open"),
            "number": pr_doc.get("number"),
            "merged_at": _first(pr_doc.get("mergedAt"), pull_request.get("mergedAt")),
            "merged_by": _first(pr_doc.get("mergedBy"), pull_request.get("mergedBy")),
            "head_sha": pr_doc.get("headSha"),
        },
        "merged_sha": _first(document.get("mergedSha")),
        "lock": document.get("lock") if isinstance(document.get("lock"), Mapping) else None,
        "timeline": [entry for entry in timeline if isinstance(entry, Mapping)]
        if isinstance(timeline, list)
        else [],
        "target_owner": document.get("targetOwner"),
        "target_repo": document.get("targetRepo"),
        "branch_name": document.get("branchName"),
        "pr_number": _first(document.get("prNumber"), pr_doc.get("number")),
        "revision": document.get("revision"),
    }
    return RequestSnapshot.model_validate(data)


def as_snapshot(request: RequestSnapshot | Mapping[str, Any]) -> RequestSnapshot:
    if isinstance(request, RequestSnapshot):
        return request
    if isinstance(request, Mapping):
        return normalize_request(request)
    raise TypeError(f"Expected a request document or RequestSnapshot, got {type(request).__name__}")
