"""Polling dispatcher that claims runnable jobs and runs them under a concurrency cap."""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from commit_digest.jobs.errors import JobExecutionError, JobValidationError, NonRetryableJobError
from commit_digest.jobs.failure_classifier import classify_handler_failure
from commit_digest.jobs.handlers.base import HandlerRegistry
from commit_digest.jobs.models import FailureOutcome, JobStatus, JobType, JobView
from commit_digest.jobs.repository import JobRepository
from commit_digest.jobs.resolver import DependencyResolver
from commit_digest.jobs.sweeper import RecoverySweeper
from commit_digest.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleSummary:
    """Counters for one or more dispatch cycles."""

    cycles: int = 0
    swept: int = 0
    claimed: int = 0
    rejected: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0

    @property
    def idle(self) -> bool:
        return self.claimed == 0 and self.rejected == 0 and self.swept == 0

    def add(self, other: CycleSummary) -> None:
        self.cycles += other.cycles
        self.swept += other.swept
        self.claimed += other.claimed
        self.rejected += other.rejected
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried


@dataclass(slots=True)
class JobOutcome:
    job_id: str
    succeeded: bool = False
    retried: bool = False
    failed: bool = False


@dataclass(slots=True)
class ActiveJob:
    job_id: str
    job_type: JobType
    attempts: int
    started_at: datetime


@dataclass(slots=True)
class EngineStatus:
    """Read-only operational snapshot."""

    running: bool
    worker_id: str
    pending_jobs: int
    running_jobs: int
    completed_jobs: int
    failed_jobs: int
    processed_total: int
    failed_total: int
    started_at: datetime | None
    last_processed_at: datetime | None
    active_jobs: list[ActiveJob] = field(default_factory=list)


class JobDispatcher:
    """Claims runnable jobs and hands them to handlers on a bounded thread pool.

    One polling loop per instance. Instances share nothing but the job store,
    so several of them (threads or processes) may serve the same database.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        resolver: DependencyResolver | None = None,
        sweeper: RecoverySweeper | None = None,
        worker_id: str | None = None,
        max_concurrent_jobs: int = 5,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        exponential_backoff: bool = True,
        graceful_shutdown_seconds: float = 30.0,
    ) -> None:
        if max_concurrent_jobs <= 0:
            raise ValueError("max_concurrent_jobs must be > 0.")
        self.repository = repository
        self.registry = registry
        self.resolver = resolver or DependencyResolver()
        self.sweeper = sweeper
        self.worker_id = worker_id or f"dispatcher-{uuid4().hex[:8]}"
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.exponential_backoff = exponential_backoff
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[JobOutcome]] = {}
        self._active: dict[str, ActiveJob] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._processed_total = 0
        self._failed_total = 0
        self._started_at: datetime | None = None
        self._last_processed_at: datetime | None = None

    # -- cycle ------------------------------------------------------------

    def run_cycle(self, *, wait: bool = False) -> CycleSummary:
        """Run one sweep-claim-dispatch cycle.

        With ``wait=True`` the call returns only after the jobs claimed in this
        cycle finished. Store errors propagate to the caller.
        """

        summary = CycleSummary(cycles=1)
        if self._stop_event.is_set():
            return summary
        if self.sweeper is not None:
            summary.swept = len(self.sweeper.sweep())

        budget = self.max_concurrent_jobs - self.in_flight_count
        if budget <= 0:
            return summary

        def admit(candidate: JobView) -> bool:
            if self._stop_event.is_set():
                return False
            if self._reject_if_invalid(candidate):
                summary.rejected += 1
                return False
            return True

        claimed = self.repository.claim_next_runnable(
            worker_id=self.worker_id,
            capacity=budget,
            resolver=self.resolver,
            admit=admit,
        )
        submitted: list[Future[JobOutcome]] = []
        for job in claimed:
            summary.claimed += 1
            dependencies = self.repository.get_dependency_jobs(job_id=job.job_id)
            submitted.append(self._submit(job, dependencies))

        if wait:
            for future in submitted:
                _record_outcome(summary, future.result())
        return summary

    def run_until_idle(
        self,
        *,
        max_cycles: int | None = None,
        max_idle_cycles: int = 1,
    ) -> CycleSummary:
        """Run blocking cycles until the queue is idle or ``max_cycles`` is reached."""

        aggregate = CycleSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                summary = self.run_cycle(wait=True)
                aggregate.add(summary)
                if not summary.idle:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if consecutive_idle >= max_idle_cycles:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return aggregate

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Reconcile orphaned jobs, then start the background polling loop."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        if self.sweeper is not None:
            recovered = self.sweeper.sweep()
            if recovered:
                logger.warning("Reconciled %d orphaned running job(s) on start", len(recovered))
        self._started_at = utc_now()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"job-dispatcher-{self.worker_id}",
        )
        self._thread.start()
        logger.info(
            "Job dispatcher %s started (max_concurrent_jobs=%d, poll_interval=%.1fs)",
            self.worker_id,
            self.max_concurrent_jobs,
            self.poll_interval_seconds,
        )

    def stop(self, *, grace_seconds: float | None = None) -> bool:
        """Stop claiming work and wait for in-flight handlers.

        Returns ``False`` when handlers were still running after the grace
        period; their jobs stay ``running`` until the recovery sweep resets them.
        """

        grace = self.graceful_shutdown_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + grace
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._thread = None

        drained = self.wait_for_in_flight(timeout=max(0.0, deadline - time.monotonic()))
        if not drained:
            with self._lock:
                remaining = sorted({item.job_id for item in self._active.values()})
            logger.warning(
                "Job dispatcher %s stopped with %d job(s) still running: %s",
                self.worker_id,
                len(remaining),
                ", ".join(remaining),
            )
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._started_at = None
        logger.info("Job dispatcher %s stopped", self.worker_id)
        return drained

    def serve(self) -> None:
        """Run the polling loop until SIGINT/SIGTERM, then stop gracefully."""

        with self._signal_handlers():
            self.start()
            try:
                while not self._stop_event.wait(timeout=0.5):
                    pass
            finally:
                self.stop()

    def wait_for_in_flight(self, *, timeout: float | None = None) -> bool:
        with self._lock:
            futures = list(self._in_flight.values())
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for future in self._in_flight.values() if not future.done())

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> EngineStatus:
        stats = self.repository.queue_stats()
        with self._lock:
            active = sorted(self._active.values(), key=lambda item: item.started_at)
            processed_total = self._processed_total
            failed_total = self._failed_total
            last_processed_at = self._last_processed_at
        return EngineStatus(
            running=self.is_running,
            worker_id=self.worker_id,
            pending_jobs=stats.pending,
            running_jobs=stats.running,
            completed_jobs=stats.completed,
            failed_jobs=stats.failed,
            processed_total=processed_total,
            failed_total=failed_total,
            started_at=self._started_at,
            last_processed_at=last_processed_at,
            active_jobs=active,
        )

    # -- execution --------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Dispatch cycle failed; retrying on next poll")
            self._stop_event.wait(timeout=self.poll_interval_seconds)

    def _reject_if_invalid(self, job: JobView) -> bool:
        handler = self.registry.get(job.job_type)
        if handler is None:
            return False
        try:
            handler.validate(job)
        except JobValidationError as error:
            rejected = self.repository.reject_job(
                job_id=job.job_id,
                error_message=error.message,
                error_details=error.details or None,
            )
            if rejected:
                logger.error("Rejected job %s (%s): %s", job.job_id, job.job_type.value, error)
            return rejected
        return False

    def _submit(self, job: JobView, dependencies: Sequence[JobView]) -> Future[JobOutcome]:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_concurrent_jobs,
                    thread_name_prefix=f"job-{self.worker_id}",
                )
            # Keyed by claim: a recovered job may be claimed again while its
            # superseded run is still executing.
            claim_key = job.claim_id or job.job_id
            self._active[claim_key] = ActiveJob(
                job_id=job.job_id,
                job_type=job.job_type,
                attempts=job.attempts,
                started_at=job.started_at or utc_now(),
            )
            future = self._executor.submit(self._execute_job, job, list(dependencies))
            self._in_flight[claim_key] = future
        future.add_done_callback(
            lambda done, key=claim_key, job_id=job.job_id: self._release(key, job_id, done),
        )
        return future

    def _release(self, claim_key: str, job_id: str, future: Future[JobOutcome]) -> None:
        with self._lock:
            self._in_flight.pop(claim_key, None)
            self._active.pop(claim_key, None)
        error = future.exception()
        if error is not None:
            logger.error("Job %s could not be finalized: %s", job_id, error, exc_info=error)

    def _execute_job(self, job: JobView, dependencies: list[JobView]) -> JobOutcome:
        started = time.monotonic()
        try:
            handler = self.registry.require(job.job_type)
            result = handler.execute(job, self.resolver.resolve(job, dependencies))
            _ensure_json_object(result)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(job, error)

        recorded = self.repository.record_success(
            job_id=job.job_id,
            result=result,
            worker_id=self.worker_id,
            claim_id=job.claim_id,
        )
        if not recorded:
            logger.warning(
                "Job %s finished but claim %s is no longer current; result dropped",
                job.job_id,
                job.claim_id,
            )
            return JobOutcome(job_id=job.job_id)
        self._count(failed=False)
        logger.info(
            "Job %s (%s) completed in %.2fs",
            job.job_id,
            job.job_type.value,
            time.monotonic() - started,
        )
        return JobOutcome(job_id=job.job_id, succeeded=True)

    def _handle_failure(self, job: JobView, error: Exception) -> JobOutcome:
        classification = classify_handler_failure(error)
        details = classification.to_error_details(exception_type=type(error).__name__)
        if isinstance(error, JobExecutionError) and error.details:
            details["handler_details"] = error.details
        delay_seconds = self.compute_retry_delay(attempts=job.attempts + 1)
        outcome: FailureOutcome = self.repository.record_failure(
            job_id=job.job_id,
            error_message=classification.error_message,
            retryable=classification.retryable,
            retry_after=utc_now() + timedelta(seconds=delay_seconds),
            failure_class=classification.failure_class,
            error_details=details,
            worker_id=self.worker_id,
            claim_id=job.claim_id,
        )
        if not outcome.recorded:
            logger.warning(
                "Job %s failed but claim %s is no longer current: %s",
                job.job_id,
                job.claim_id,
                classification.error_message,
            )
            return JobOutcome(job_id=job.job_id)

        if outcome.retried:
            logger.warning(
                "Job %s (%s) attempt %d/%d failed, retrying in %.1fs: %s",
                job.job_id,
                job.job_type.value,
                outcome.attempts,
                job.max_attempts,
                delay_seconds,
                classification.error_message,
            )
            self._count(failed=False)
            return JobOutcome(job_id=job.job_id, retried=True)

        logger.error(
            "Job %s (%s) failed permanently after %d attempt(s) [%s]: %s",
            job.job_id,
            job.job_type.value,
            outcome.attempts,
            classification.failure_class.value,
            classification.error_message,
            exc_info=not isinstance(error, JobExecutionError),
        )
        self._count(failed=True)
        return JobOutcome(job_id=job.job_id, failed=True)

    def compute_retry_delay(self, *, attempts: int) -> float:
        """Backoff before retry number ``attempts``: base, then doubling, capped."""

        if not self.exponential_backoff:
            return min(self.retry_base_seconds, self.retry_max_seconds)
        return min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(attempts - 1, 0)),
        )

    def _count(self, *, failed: bool) -> None:
        with self._lock:
            self._processed_total += 1
            if failed:
                self._failed_total += 1
            self._last_processed_at = utc_now()

    # -- signals ----------------------------------------------------------

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if not self._stop_event.is_set():
            logger.info(
                "Stop requested for dispatcher %s (%s)",
                self.worker_id,
                signal_name or "api",
            )
        self._stop_event.set()

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(timeout=seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _ensure_json_object(result: Any) -> None:
    if not isinstance(result, dict):
        raise NonRetryableJobError(
            f"Handler result must be an object, got {type(result).__name__}",
        )
    try:
        json.dumps(result)
    except (TypeError, ValueError) as error:
        raise NonRetryableJobError(f"Handler result is not JSON serializable: {error}") from error


def _record_outcome(summary: CycleSummary, outcome: JobOutcome) -> None:
    if outcome.succeeded:
        summary.succeeded += 1
    elif outcome.retried:
        summary.retried += 1
    elif outcome.failed:
        summary.failed += 1


__all__ = [
    "ActiveJob",
    "CycleSummary",
    "EngineStatus",
    "JobDispatcher",
    "JobOutcome",
    "JobStatus",
]
