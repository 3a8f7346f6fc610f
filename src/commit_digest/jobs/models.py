"""Domain models for the job queue and processing engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Job kinds; each one selects a handler."""

    FETCH_DIFF = "fetch_diff"
    GENERATE_SUMMARY = "generate_summary"
    SEND_EMAIL = "send_email"
    WEBHOOK_PROCESSING = "webhook_processing"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    NON_RETRYABLE = "non_retryable"
    STUCK = "stuck"
    HANDLER_MISSING = "handler_missing"


MIN_PRIORITY = 0
MAX_PRIORITY = 100
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job."""

    job_type: JobType
    data: dict[str, Any]
    job_id: str | None = None
    priority: int = 0
    max_attempts: int = 3
    context: dict[str, Any] = field(default_factory=dict)
    scheduled_for: datetime | None = None
    project_id: str | None = None
    commit_id: str | None = None
    dedup_key: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for dispatcher, handlers, and CLI."""

    job_id: str
    job_type: JobType
    status: JobStatus
    priority: int
    data: dict[str, Any]
    context: dict[str, Any]
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    retry_after: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    error_details: dict[str, Any] | None
    failure_class: FailureClass | None
    worker_id: str | None
    project_id: str | None
    commit_id: str | None
    dedup_key: str | None
    created_at: datetime
    updated_at: datetime
    claim_id: str | None = None

    @property
    def result(self) -> dict[str, Any] | None:
        """Handler result written on completion, if any."""

        value = self.context.get("result")
        return value if isinstance(value, dict) else None


@dataclass(slots=True)
class JobDependencyView:
    """One dependency edge, in declaration order."""

    job_id: str
    depends_on_job_id: str
    position: int
    created_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class JobDetails:
    """Job with its dependency edges and event stream."""

    job: JobView
    dependencies: list[JobDependencyView]
    events: list[JobEventView]


@dataclass(slots=True)
class JobFilter:
    """Predicate for listing jobs; unset fields do not filter."""

    statuses: tuple[JobStatus, ...] = ()
    job_types: tuple[JobType, ...] = ()
    project_id: str | None = None
    commit_id: str | None = None
    min_priority: int | None = None
    max_priority: int | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    error_message: str | None = None
    limit: int = 50


@dataclass(slots=True)
class FailureOutcome:
    """Result of recording a handler failure."""

    recorded: bool
    status: JobStatus | None
    attempts: int
    retry_after: datetime | None = None

    @property
    def retried(self) -> bool:
        return self.recorded and self.status == JobStatus.PENDING

    @property
    def failed(self) -> bool:
        return self.recorded and self.status == JobStatus.FAILED


@dataclass(slots=True)
class RecoveredJob:
    """One job repaired by the recovery sweep."""

    job_id: str
    job_type: JobType
    attempts: int
    status: JobStatus
    running_seconds: float


@dataclass(slots=True)
class QueueStats:
    """Aggregate counts per status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    oldest_pending_created_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed


@dataclass(slots=True)
class PruneResult:
    """Outcome of a terminal-job retention prune."""

    matched: int
    deleted: int
    dry_run: bool
