from __future__ import annotations

import threading
import time
from datetime import timedelta

import allure
import pytest

from commit_digest.jobs.dispatcher import JobDispatcher
from commit_digest.jobs.echo import EchoEmailSender
from commit_digest.jobs.errors import (
    INSUFFICIENT_CREDITS_MESSAGE,
    JobValidationError,
    ResourceExhaustedError,
)
from commit_digest.jobs.handlers import HandlerRegistry, JobHandler
from commit_digest.jobs.models import FailureClass, JobCreate, JobStatus, JobType
from commit_digest.jobs.sweeper import RecoverySweeper
from commit_digest.jobs.system import Collaborators, build_registry
from commit_digest.jobs.workflow import CommitWorkItem, WorkflowBuilder
from commit_digest.storage.common import utc_now

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Dispatcher"),
]


class _AlwaysFailingFetch(JobHandler):
    job_type = JobType.FETCH_DIFF

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def execute(self, job, inputs):
        self.calls += 1
        raise self.error


class _BlockingFetch(JobHandler):
    job_type = JobType.FETCH_DIFF

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, job, inputs):
        with self._lock:
            self.calls += 1
        self.started.set()
        self.release.wait(timeout=10)
        return {"diff_content": "diff"}


class _StrictFetch(JobHandler):
    job_type = JobType.FETCH_DIFF

    def validate(self, job):
        raise JobValidationError("repository is not allowed", details={"owner": "acme"})

    def execute(self, job, inputs):
        raise AssertionError("rejected jobs must not execute")


class _GatedFetch(JobHandler):
    job_type = JobType.FETCH_DIFF

    def __init__(self) -> None:
        self.started = [threading.Event(), threading.Event()]
        self.gates = [threading.Event(), threading.Event()]
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, job, inputs):
        with self._lock:
            run = self.calls
            self.calls += 1
        self.started[run].set()
        self.gates[run].wait(timeout=10)
        return {"diff_content": f"run-{run}"}


class _RivalClaimsFirst(JobHandler):
    """Lets another worker claim and fail the job between listing and claiming."""

    job_type = JobType.FETCH_DIFF

    def __init__(self, repository) -> None:
        self.repository = repository
        self.executed = False

    def validate(self, job):
        rival = self.repository.claim_job(job_id=job.job_id, worker_id="rival")
        self.repository.record_failure(
            job_id=job.job_id,
            error_message="upstream busy",
            retryable=True,
            retry_after=utc_now() + timedelta(hours=1),
            claim_id=rival.claim_id,
        )

    def execute(self, job, inputs):
        self.executed = True
        return {"diff_content": "too early"}


class _BadResultFetch(JobHandler):
    job_type = JobType.FETCH_DIFF

    def execute(self, job, inputs):
        return {"when": object()}


def _dispatcher(repository, registry, **overrides) -> JobDispatcher:
    options = {
        "repository": repository,
        "registry": registry,
        "worker_id": "test-dispatcher",
        "max_concurrent_jobs": 5,
        "poll_interval_seconds": 0.01,
        "retry_base_seconds": 0.0,
        "retry_max_seconds": 0.0,
        "graceful_shutdown_seconds": 5.0,
    }
    options.update(overrides)
    return JobDispatcher(**options)


def _echo_registry(repository, collaborators: Collaborators) -> HandlerRegistry:
    return build_registry(
        collaborators=collaborators,
        workflow_builder=WorkflowBuilder(repository),
    )


def test_commit_chain_completes_in_three_cycles(repository) -> None:
    collaborators = Collaborators.echo()
    dispatcher = _dispatcher(repository, _echo_registry(repository, collaborators))
    workflow = WorkflowBuilder(repository).build_commit_workflow(
        CommitWorkItem(
            commit_id="c1",
            sha="a" * 40,
            repository_owner="acme",
            repository_name="widgets",
            commit_message="feat: add widgets",
            recipients=("dev@example.com",),
        ),
    )

    summaries = [dispatcher.run_cycle(wait=True) for _ in range(3)]

    assert [summary.succeeded for summary in summaries] == [1, 1, 1]
    fetch = repository.get_job(job_id=workflow.fetch_diff.job_id)
    summary = repository.get_job(job_id=workflow.generate_summary.job_id)
    email = repository.get_job(job_id=workflow.send_email.job_id)
    assert fetch.status == summary.status == email.status == JobStatus.COMPLETED
    assert fetch.completed_at <= summary.started_at
    assert summary.completed_at <= email.started_at
    assert "diff --git" in fetch.result["diff_content"]
    assert summary.result["change_type"] == "feature"
    assert email.result["commit_count"] == 1
    assert email.result["recipients"] == ["dev@example.com"]

    sender = collaborators.email_sender
    assert isinstance(sender, EchoEmailSender)
    assert len(sender.sent) == 1
    assert dispatcher.run_cycle(wait=True).idle


def test_transient_failures_exhaust_max_attempts(repository, make_fetch_job) -> None:
    handler = _AlwaysFailingFetch(ConnectionError("connection reset by peer"))
    dispatcher = _dispatcher(repository, HandlerRegistry([handler]))
    job = repository.create_job(make_fetch_job(max_attempts=3))

    total = dispatcher.run_until_idle(max_cycles=10)

    failed = repository.get_job(job_id=job.job_id)
    assert handler.calls == 3
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 3
    assert failed.failure_class == FailureClass.TRANSIENT
    assert failed.error_message == "connection reset by peer"
    assert failed.error_details["matched_rule"] == "generic_transient"
    assert (total.retried, total.failed) == (2, 1)


def test_resource_exhaustion_is_terminal_and_recoverable(repository, make_summary_job) -> None:
    class _NoCredits(JobHandler):
        job_type = JobType.GENERATE_SUMMARY

        def execute(self, job, inputs):
            raise ResourceExhaustedError()

    dispatcher = _dispatcher(repository, HandlerRegistry([_NoCredits()]))
    job = repository.create_job(make_summary_job(data={"commit_id": "c1", "diff_content": "d"}))

    dispatcher.run_cycle(wait=True)

    failed = repository.get_job(job_id=job.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert failed.error_message == INSUFFICIENT_CREDITS_MESSAGE
    assert failed.failure_class == FailureClass.RESOURCE_EXHAUSTED
    assert repository.retry_failed_jobs() == [job.job_id]


def test_validation_failure_rejects_without_running(repository, make_fetch_job) -> None:
    dispatcher = _dispatcher(repository, HandlerRegistry([_StrictFetch()]))
    job = repository.create_job(make_fetch_job())

    summary = dispatcher.run_cycle(wait=True)

    rejected = repository.get_job(job_id=job.job_id)
    assert (summary.rejected, summary.claimed) == (1, 0)
    assert rejected.status == JobStatus.FAILED
    assert rejected.attempts == 0
    assert rejected.failure_class == FailureClass.VALIDATION
    assert rejected.error_details == {"owner": "acme"}


def test_missing_handler_fails_job(repository, make_fetch_job) -> None:
    dispatcher = _dispatcher(repository, HandlerRegistry())
    job = repository.create_job(make_fetch_job())

    summary = dispatcher.run_cycle(wait=True)

    failed = repository.get_job(job_id=job.job_id)
    assert summary.failed == 1
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.HANDLER_MISSING
    assert "fetch_diff" in (failed.error_message or "")


def test_non_serializable_result_is_non_retryable(repository, make_fetch_job) -> None:
    dispatcher = _dispatcher(repository, HandlerRegistry([_BadResultFetch()]))
    job = repository.create_job(make_fetch_job())

    dispatcher.run_cycle(wait=True)

    failed = repository.get_job(job_id=job.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.NON_RETRYABLE
    assert "JSON serializable" in (failed.error_message or "")


def test_concurrency_cap_limits_claims(repository, make_fetch_job) -> None:
    handler = _BlockingFetch()
    dispatcher = _dispatcher(repository, HandlerRegistry([handler]), max_concurrent_jobs=2)
    for index in range(4):
        repository.create_job(make_fetch_job(sha=str(index) * 40))

    try:
        first = dispatcher.run_cycle()
        assert first.claimed == 2
        assert handler.started.wait(timeout=5)
        assert dispatcher.run_cycle().claimed == 0
        assert dispatcher.status().running_jobs == 2
        assert len(dispatcher.status().active_jobs) == 2
    finally:
        handler.release.set()
        assert dispatcher.wait_for_in_flight(timeout=5)

    assert dispatcher.run_cycle(wait=True).claimed == 2
    assert repository.queue_stats().completed == 4
    dispatcher.stop(grace_seconds=1)


def test_two_dispatchers_never_run_the_same_job(repository, make_fetch_job) -> None:
    handler = _BlockingFetch()
    handler.release.set()
    registry = HandlerRegistry([handler])
    first = _dispatcher(repository, registry, worker_id="first")
    second = _dispatcher(repository, registry, worker_id="second")
    jobs = [repository.create_job(make_fetch_job(sha=str(index) * 40)) for index in range(6)]

    threads = [
        threading.Thread(target=dispatcher.run_cycle, kwargs={"wait": True})
        for dispatcher in (first, second)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    first.run_until_idle(max_cycles=5)

    assert handler.calls == len(jobs)
    assert repository.queue_stats().completed == len(jobs)
    for job in jobs:
        events = repository.get_job_details(job_id=job.job_id).events
        assert [event.event_type for event in events].count("claimed") == 1


def test_stuck_job_is_recovered_and_rerun(repository, make_fetch_job) -> None:
    collaborators = Collaborators.echo()
    sweeper = RecoverySweeper(repository=repository, default_timeout_seconds=60)
    dispatcher = _dispatcher(
        repository,
        _echo_registry(repository, collaborators),
        sweeper=sweeper,
    )
    job = repository.create_job(make_fetch_job())
    repository.claim_job(job_id=job.job_id, worker_id="crashed", now=utc_now() - timedelta(hours=1))

    summary = dispatcher.run_cycle(wait=True)

    assert summary.swept == 1
    assert summary.succeeded == 1
    done = repository.get_job(job_id=job.job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.attempts == 1


def test_start_and_stop_drain_the_queue(repository, make_fetch_job) -> None:
    collaborators = Collaborators.echo()
    dispatcher = _dispatcher(repository, _echo_registry(repository, collaborators))
    jobs = [repository.create_job(make_fetch_job(sha=str(index) * 40)) for index in range(3)]

    dispatcher.start()
    assert dispatcher.is_running
    deadline = time.monotonic() + 10
    while repository.queue_stats().completed < len(jobs) and time.monotonic() < deadline:
        time.sleep(0.05)
    was_running = dispatcher.status().running
    drained = dispatcher.stop()
    status = dispatcher.status()

    assert drained
    assert was_running
    assert not status.running
    assert repository.queue_stats().completed == len(jobs)
    assert status.processed_total == len(jobs)
    assert status.failed_total == 0
    assert status.last_processed_at is not None


def test_stop_reports_unfinished_handlers(repository, make_fetch_job) -> None:
    handler = _BlockingFetch()
    dispatcher = _dispatcher(repository, HandlerRegistry([handler]))
    job = repository.create_job(make_fetch_job())

    dispatcher.start()
    assert handler.started.wait(timeout=5)
    drained = dispatcher.stop(grace_seconds=0.1)
    handler.release.set()

    assert not drained
    assert repository.get_job(job_id=job.job_id).status in {
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
    }
    assert dispatcher.run_cycle().claimed == 0


@pytest.mark.parametrize(
    ("exponential", "attempts", "expected"),
    [
        (True, 1, 1.0),
        (True, 2, 2.0),
        (True, 3, 4.0),
        (True, 10, 30.0),
        (False, 5, 1.0),
    ],
)
def test_compute_retry_delay(repository, exponential, attempts, expected) -> None:
    dispatcher = _dispatcher(
        repository,
        HandlerRegistry(),
        retry_base_seconds=1.0,
        retry_max_seconds=30.0,
        exponential_backoff=exponential,
    )

    assert dispatcher.compute_retry_delay(attempts=attempts) == expected


def test_dispatcher_requires_positive_concurrency(repository) -> None:
    with pytest.raises(ValueError, match="max_concurrent_jobs"):
        _dispatcher(repository, HandlerRegistry(), max_concurrent_jobs=0)


def test_jobs_created_with_job_create_are_dispatched(repository) -> None:
    collaborators = Collaborators.echo()
    dispatcher = _dispatcher(repository, _echo_registry(repository, collaborators))
    job = repository.create_job(
        JobCreate(
            job_type=JobType.GENERATE_SUMMARY,
            data={"commit_id": "c9", "diff_content": "diff --git a/x b/x"},
        ),
    )

    dispatcher.run_cycle(wait=True)

    assert repository.get_job(job_id=job.job_id).result["commit_id"] == "c9"


def test_superseded_run_on_the_same_dispatcher_is_dropped(repository, make_fetch_job) -> None:
    handler = _GatedFetch()
    sweeper = RecoverySweeper(repository=repository, default_timeout_seconds=0.2)
    dispatcher = _dispatcher(repository, HandlerRegistry([handler]), sweeper=sweeper)
    job = repository.create_job(make_fetch_job())

    try:
        assert dispatcher.run_cycle().claimed == 1
        assert handler.started[0].wait(timeout=5)
        time.sleep(0.3)
        second = dispatcher.run_cycle()
        assert second.swept == 1
        assert second.claimed == 1
        assert handler.started[1].wait(timeout=5)
        assert dispatcher.in_flight_count == 2

        handler.gates[0].set()
        deadline = time.monotonic() + 5
        while dispatcher.in_flight_count > 1 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert dispatcher.in_flight_count == 1
        still_running = repository.get_job(job_id=job.job_id)
        assert still_running.status == JobStatus.RUNNING
        assert still_running.result is None
        assert not dispatcher.stop(grace_seconds=0.1)
    finally:
        handler.gates[1].set()

    assert dispatcher.wait_for_in_flight(timeout=5)
    done = repository.get_job(job_id=job.job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.result == {"diff_content": "run-1"}


def test_competing_claim_keeps_backoff(repository, make_fetch_job) -> None:
    handler = _RivalClaimsFirst(repository)
    dispatcher = _dispatcher(repository, HandlerRegistry([handler]))
    job = repository.create_job(make_fetch_job())

    summary = dispatcher.run_cycle(wait=True)

    assert summary.claimed == 0
    assert not handler.executed
    pending = repository.get_job(job_id=job.job_id)
    assert pending.status == JobStatus.PENDING
    assert pending.attempts == 1
    assert pending.retry_after > utc_now()
