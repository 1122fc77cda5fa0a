"""Server-authoritative resource tags.

Every request's configuration carries a fixed set of tags derived from the
request itself. Caller-supplied tags are kept as extras, but can never
override a required key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, MutableMapping

REQUEST_ID_TAG = "request_id"
PROJECT_TAG = "project"
ENVIRONMENT_TAG = "environment"
CREATED_BY_TAG = "created_by"
TEMPLATE_TAG_KEY = "template_id"

REQUIRED_TAG_KEYS: tuple[str, ...] = (
    REQUEST_ID_TAG,
    PROJECT_TAG,
    ENVIRONMENT_TAG,
    CREATED_BY_TAG,
)


class MissingRequiredTagError(ValueError):
    """Raised when stored configuration lacks a server-authoritative tag."""


@dataclass(frozen=True)
class RequestForTags:
    id: str
    project: str
    environment: str
    template_id: str | None = None

    @property
    def has_template(self) -> bool:
        return self.template_id is not None and str(self.template_id).strip() != ""


def build_server_authoritative_tags(request: RequestForTags, created_by: str) -> dict[str, str]:
    tags = {
        REQUEST_ID_TAG: request.id,
        PROJECT_TAG: request.project,
        ENVIRONMENT_TAG: request.environment,
        CREATED_BY_TAG: created_by,
    }
    if request.has_template:
        tags[TEMPLATE_TAG_KEY] = str(request.template_id).strip()
    return tags


def inject_server_authoritative_tags(
    config: MutableMapping[str, Any],
    request: RequestForTags,
    created_by: str,
) -> None:
    """Merge required tags into ``config["tags"]`` in place; required keys win."""
    existing = config.get("tags")
    extra = dict(existing) if isinstance(existing, dict) else {}
    config["tags"] = {**extra, **build_server_authoritative_tags(request, created_by)}


def _is_blank(value: object) -> bool:
    return value is None or str(value).strip() == ""


def assert_required_tags_present(config: MutableMapping[str, Any], request: RequestForTags) -> None:
    """Fail fast when configuration was stored without going through the injector."""
    tags = config.get("tags")
    if not isinstance(tags, dict):
        raise MissingRequiredTagError(
            "config.tags must be an object with required server-authoritative keys"
        )
    required = REQUIRED_TAG_KEYS
    if request.template_id is not None:
        required = (*REQUIRED_TAG_KEYS, TEMPLATE_TAG_KEY)
    for key in required:
        if _is_blank(tags.get(key)):
            raise MissingRequiredTagError(f"Missing required tag: {key}")
