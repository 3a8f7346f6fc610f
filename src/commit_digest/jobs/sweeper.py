"""Timeout-driven recovery of jobs stuck in ``running``."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from commit_digest.jobs.models import JobType, RecoveredJob
from commit_digest.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class RecoverySweeper:
    """Resets jobs whose owner crashed or hung.

    The timeout for a job type must exceed that handler's worst-case
    duration, otherwise a live job may be executed twice.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        default_timeout_seconds: float,
        per_type_timeout_seconds: dict[JobType, float] | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0.")
        self.repository = repository
        self.default_timeout = timedelta(seconds=default_timeout_seconds)
        self.per_type_timeouts = {
            job_type: timedelta(seconds=seconds)
            for job_type, seconds in (per_type_timeout_seconds or {}).items()
        }

    def timeout_for(self, job_type: JobType) -> timedelta:
        return self.per_type_timeouts.get(job_type, self.default_timeout)

    def sweep(self, *, now: datetime | None = None) -> list[RecoveredJob]:
        recovered = self.repository.recover_stuck_jobs(
            default_timeout=self.default_timeout,
            per_type_timeouts=self.per_type_timeouts,
            now=now,
        )
        if recovered:
            logger.info("Recovery sweep reset %d stuck job(s)", len(recovered))
        return recovered
