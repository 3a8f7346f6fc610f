"""Typed job data schemas, one per job type.

Job ``data`` is persisted as a JSON object. At creation time and again
before execution it is parsed into the dataclass registered for the job
type, so malformed payloads fail fast as validation errors.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any

from commit_digest.jobs.errors import JobValidationError
from commit_digest.jobs.models import JobType

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TEMPLATE_TYPES = ("single_commit", "digest", "weekly_summary")


@dataclass(slots=True)
class FetchDiffData:
    """Locate one commit diff in the source-control host."""

    commit_sha: str
    repository_owner: str
    repository_name: str
    branch: str | None = None
    base_sha: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FetchDiffData:
        return cls(
            commit_sha=_required_str(raw, "commit_sha"),
            repository_owner=_required_str(raw, "repository_owner"),
            repository_name=_required_str(raw, "repository_name"),
            branch=_optional_str(raw, "branch"),
            base_sha=_optional_str(raw, "base_sha"),
        )


@dataclass(slots=True)
class GenerateSummaryData:
    """Summarize one commit; the diff usually arrives from the fetch_diff dependency."""

    commit_id: str
    commit_message: str = ""
    author: str | None = None
    branch: str | None = None
    diff_content: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GenerateSummaryData:
        return cls(
            commit_id=_required_str(raw, "commit_id"),
            commit_message=_optional_str(raw, "commit_message") or "",
            author=_optional_str(raw, "author"),
            branch=_optional_str(raw, "branch"),
            diff_content=_optional_str(raw, "diff_content"),
        )


@dataclass(slots=True)
class SendEmailData:
    """Email summaries of one or more commits."""

    commit_ids: list[str]
    recipients: list[str]
    template_type: str = "single_commit"
    template_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SendEmailData:
        commit_ids = _required_str_list(raw, "commit_ids")
        recipients = _required_str_list(raw, "recipients")
        invalid = [address for address in recipients if not EMAIL_PATTERN.match(address)]
        if invalid:
            raise JobValidationError(
                f"Invalid email addresses: {', '.join(invalid)}",
                details={"invalid_recipients": invalid},
            )
        template_type = raw.get("template_type", "single_commit")
        if template_type not in TEMPLATE_TYPES:
            raise JobValidationError(
                f"template_type must be one of {', '.join(TEMPLATE_TYPES)}, got {template_type!r}",
            )
        template_data = raw.get("template_data", {})
        if not isinstance(template_data, dict):
            raise JobValidationError("template_data must be an object")
        return cls(
            commit_ids=commit_ids,
            recipients=recipients,
            template_type=template_type,
            template_data=template_data,
        )


@dataclass(slots=True)
class PushCommit:
    """One commit from an already-authenticated push event."""

    commit_id: str
    sha: str
    message: str = ""
    author: str | None = None

    @classmethod
    def from_dict(cls, raw: object, *, index: int) -> PushCommit:
        if not isinstance(raw, dict):
            raise JobValidationError(f"commits[{index}] must be an object")
        sha = _required_str(raw, "sha", prefix=f"commits[{index}].")
        return cls(
            commit_id=_optional_str(raw, "commit_id") or sha,
            sha=sha,
            message=_optional_str(raw, "message") or "",
            author=_optional_str(raw, "author"),
        )


@dataclass(slots=True)
class WebhookProcessingData:
    """Push event handed over by the webhook receiver after signature checks."""

    event_type: str
    repository_owner: str
    repository_name: str
    commits: list[PushCommit]
    project_id: str | None = None
    delivery_id: str | None = None
    branch: str | None = None
    before_sha: str | None = None
    recipients: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WebhookProcessingData:
        raw_commits = raw.get("commits", [])
        if not isinstance(raw_commits, list):
            raise JobValidationError("commits must be an array")
        recipients = raw.get("recipients", [])
        if not isinstance(recipients, list) or not all(
            isinstance(item, str) for item in recipients
        ):
            raise JobValidationError("recipients must be an array of strings")
        return cls(
            event_type=_required_str(raw, "event_type"),
            repository_owner=_required_str(raw, "repository_owner"),
            repository_name=_required_str(raw, "repository_name"),
            commits=[
                PushCommit.from_dict(item, index=index) for index, item in enumerate(raw_commits)
            ],
            project_id=_optional_str(raw, "project_id"),
            delivery_id=_optional_str(raw, "delivery_id"),
            branch=_optional_str(raw, "branch"),
            before_sha=_optional_str(raw, "before_sha"),
            recipients=recipients,
        )


JobData = FetchDiffData | GenerateSummaryData | SendEmailData | WebhookProcessingData

_SCHEMAS: dict[JobType, type[JobData]] = {
    JobType.FETCH_DIFF: FetchDiffData,
    JobType.GENERATE_SUMMARY: GenerateSummaryData,
    JobType.SEND_EMAIL: SendEmailData,
    JobType.WEBHOOK_PROCESSING: WebhookProcessingData,
}


def parse_job_data(job_type: JobType | str, data: object) -> JobData:
    """Parse raw job data into the typed schema of ``job_type``."""

    try:
        resolved_type = JobType(job_type)
    except ValueError as error:
        raise JobValidationError(f"Unsupported job type: {job_type!r}") from error
    if not isinstance(data, dict):
        raise JobValidationError(f"{resolved_type.value} data must be an object")
    return _SCHEMAS[resolved_type].from_dict(data)


def job_data_to_dict(payload: JobData) -> dict[str, Any]:
    """Serialize typed job data, dropping unset optional fields."""

    return {key: value for key, value in asdict(payload).items() if value is not None}


def _required_str(raw: dict[str, Any], key: str, *, prefix: str = "") -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise JobValidationError(f"{prefix}{key} must be a non-empty string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise JobValidationError(f"{key} must be a string")
    return value


def _required_str_list(raw: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key)
    if not isinstance(value, list) or not value:
        raise JobValidationError(f"{key} must be a non-empty array")
    if not all(isinstance(item, str) and item.strip() for item in value):
        raise JobValidationError(f"{key} must contain non-empty strings")
    return list(value)
