"""Handler contract and the job-type lookup table."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from commit_digest.jobs.errors import HandlerNotRegisteredError
from commit_digest.jobs.models import JobType, JobView
from commit_digest.jobs.payloads import JobData, parse_job_data
from commit_digest.jobs.resolver import ResolvedInputs

logger = logging.getLogger(__name__)


class JobHandler(ABC):
    """Executes one job type.

    ``execute`` returns a JSON-serializable mapping that the dispatcher stores
    as ``context['result']``, where dependents pick it up. Handlers may be
    re-invoked after a crash, so domain writes must be safe to repeat and
    happen only after the handler's own work succeeded.
    """

    job_type: ClassVar[JobType]

    def validate(self, job: JobView) -> JobData:
        """Parse job data into its typed schema; raises ``JobValidationError``."""

        return parse_job_data(self.job_type, job.data)

    @abstractmethod
    def execute(self, job: JobView, inputs: ResolvedInputs) -> dict[str, Any]:
        """Run the job and return its result."""


class HandlerRegistry:
    def __init__(self, handlers: list[JobHandler] | None = None) -> None:
        self._handlers: dict[JobType, JobHandler] = {}
        self._lock = threading.Lock()
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: JobHandler) -> None:
        with self._lock:
            previous = self._handlers.get(handler.job_type)
            if previous is not None and previous is not handler:
                logger.warning(
                    "Replacing handler for %s: %s -> %s",
                    handler.job_type.value,
                    type(previous).__name__,
                    type(handler).__name__,
                )
            self._handlers[handler.job_type] = handler

    def unregister(self, job_type: JobType) -> JobHandler | None:
        with self._lock:
            return self._handlers.pop(job_type, None)

    def get(self, job_type: JobType) -> JobHandler | None:
        with self._lock:
            return self._handlers.get(job_type)

    def require(self, job_type: JobType) -> JobHandler:
        handler = self.get(job_type)
        if handler is None:
            raise HandlerNotRegisteredError(job_type.value)
        return handler

    def types(self) -> list[JobType]:
        with self._lock:
            return sorted(self._handlers, key=lambda job_type: job_type.value)
