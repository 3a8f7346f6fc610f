"""Typed errors raised by the job store and job handlers."""

from __future__ import annotations

from typing import Any

from commit_digest.jobs.models import FailureClass

INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits"


class JobEngineError(Exception):
    """Base error for the job engine."""


class JobNotFoundError(JobEngineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidDependencyError(JobEngineError):
    """Rejected dependency edge: self-reference, duplicate, or non-pending job."""


class DependencyCycleError(InvalidDependencyError):
    """Adding an edge would make the dependency graph cyclic."""

    def __init__(self, job_id: str, depends_on_job_id: str, path: list[str]) -> None:
        super().__init__(
            f"Dependency {job_id} -> {depends_on_job_id} would create a cycle: "
            + " -> ".join(path),
        )
        self.job_id = job_id
        self.depends_on_job_id = depends_on_job_id
        self.path = path


class JobExecutionError(JobEngineError):
    """Handler failure carrying its retry classification.

    Handlers raise one of the subclasses; the dispatcher maps the
    ``failure_class`` onto a retry or a terminal failure.
    """

    failure_class: FailureClass = FailureClass.NON_RETRYABLE

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT


class JobValidationError(JobExecutionError):
    """Malformed job data; never retried."""

    failure_class = FailureClass.VALIDATION


class MissingInputError(JobValidationError):
    """Required input absent from data, own result, and inherited context."""

    def __init__(self, key: str, *, job_id: str | None = None) -> None:
        suffix = f" for job {job_id}" if job_id else ""
        super().__init__(f"Missing required input {key!r}{suffix}", details={"key": key})
        self.key = key


class RetryableJobError(JobExecutionError):
    """Transient failure such as a network error or upstream rate limit."""

    failure_class = FailureClass.TRANSIENT


class ResourceExhaustedError(JobExecutionError):
    """Terminal until the resource is replenished and the job is reset externally."""

    failure_class = FailureClass.RESOURCE_EXHAUSTED

    def __init__(
        self,
        message: str = INSUFFICIENT_CREDITS_MESSAGE,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)


class NonRetryableJobError(JobExecutionError):
    failure_class = FailureClass.NON_RETRYABLE


class HandlerNotRegisteredError(JobExecutionError):
    failure_class = FailureClass.HANDLER_MISSING

    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type
