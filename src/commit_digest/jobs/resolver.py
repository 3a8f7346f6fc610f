"""Dependency readiness checks and inherited input context assembly."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from commit_digest.jobs.errors import MissingInputError
from commit_digest.jobs.models import JobStatus, JobView
from commit_digest.storage.common import utc_now

_MISSING = object()


@dataclass(slots=True)
class ResolvedInputs:
    """Input view handed to a handler.

    Keys are looked up in the job's own ``data``, then the job's own
    ``context['result']``, then the context inherited from dependencies,
    first directly and then under a nested ``data`` key. This lets a
    handler run standalone or inside a chain without code changes.
    """

    job: JobView
    inherited: dict[str, Any] = field(default_factory=dict)
    dependency_results: list[dict[str, Any]] = field(default_factory=list)

    def lookup(self, key: str, default: Any = None) -> Any:
        value = self._find(key)
        return default if value is _MISSING else value

    def require(self, key: str) -> Any:
        """Return a required input or raise ``MissingInputError``."""

        value = self._find(key)
        if value is _MISSING or value is None:
            raise MissingInputError(key, job_id=self.job.job_id)
        return value

    def _find(self, key: str) -> Any:
        if key in self.job.data:
            return self.job.data[key]
        own_result = self.job.result or {}
        if key in own_result:
            return own_result[key]
        if key in self.inherited:
            return self.inherited[key]
        nested = self.inherited.get("data")
        if isinstance(nested, dict) and key in nested:
            return nested[key]
        return _MISSING


class DependencyResolver:
    """Decides whether a job may run and what it inherits from its dependencies."""

    def is_runnable(
        self,
        job: JobView,
        dependencies: Sequence[JobView],
        *,
        now: datetime | None = None,
    ) -> bool:
        if job.status != JobStatus.PENDING:
            return False
        current = now or utc_now()
        if current < job.scheduled_for:
            return False
        if job.retry_after is not None and current < job.retry_after:
            return False
        return all(dependency.status == JobStatus.COMPLETED for dependency in dependencies)

    def inherited_context(self, dependencies: Sequence[JobView]) -> dict[str, Any]:
        """Merge dependency results in declaration order; later keys win."""

        merged: dict[str, Any] = {}
        for dependency in dependencies:
            merged.update(dependency.result or {})
        return merged

    def resolve(self, job: JobView, dependencies: Sequence[JobView]) -> ResolvedInputs:
        return ResolvedInputs(
            job=job,
            inherited=self.inherited_context(dependencies),
            dependency_results=[dict(dependency.result or {}) for dependency in dependencies],
        )
