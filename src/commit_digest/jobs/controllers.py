"""Controllers for job queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from commit_digest.config import Settings
from commit_digest.jobs.errors import INSUFFICIENT_CREDITS_MESSAGE
from commit_digest.jobs.models import JobFilter, JobStatus, JobType
from commit_digest.jobs.repository import JobRepository
from commit_digest.jobs.system import Collaborators, build_job_system
from commit_digest.jobs.workflow import CommitWorkItem, WorkflowBuilder
from commit_digest.storage.common import utc_now

WORKER_MODES = ("once", "loop", "serve")


@dataclass(slots=True)
class JobsWorkerCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    mode: str = "loop"
    max_cycles: int | None = None
    max_idle_cycles: int = 1
    echo_collaborators: bool = True


@dataclass(slots=True)
class JobsStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    job_type: str | None
    commit_id: str | None
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsRetryCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsRetryInsufficientCommand:
    """CLI input for re-queueing summaries that ran out of credits."""

    db_path: Path | None
    project_ids: tuple[str, ...]


@dataclass(slots=True)
class JobsEnqueueCommitCommand:
    """CLI input for a manual single-commit workflow."""

    db_path: Path | None
    commit_id: str
    project_id: str
    owner: str
    repo: str
    sha: str
    message: str
    base_sha: str | None
    recipients: tuple[str, ...]


@dataclass(slots=True)
class JobsPruneCommand:
    db_path: Path | None
    days: int
    dry_run: bool


class JobsCliController:
    """Coordinates worker, enqueue, and inspection CLI operations."""

    def run_worker(self, command: JobsWorkerCommand) -> list[str]:
        if command.mode not in WORKER_MODES:
            raise ValueError(f"Unsupported worker mode: {command.mode!r}")
        if not command.echo_collaborators:
            raise ValueError(
                "No external collaborators are configured; "
                "run the worker with --echo-collaborators.",
            )
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            system = build_job_system(
                settings=settings,
                repository=repository,
                collaborators=Collaborators.echo(),
            )
            dispatcher = system.dispatcher
            if command.mode == "serve":
                dispatcher.serve()
                status = dispatcher.status()
                return [
                    f"Dispatcher {dispatcher.worker_id} stopped: "
                    f"processed={status.processed_total} failed={status.failed_total}",
                ]
            if command.mode == "once":
                summary = dispatcher.run_cycle(wait=True)
            else:
                summary = dispatcher.run_until_idle(
                    max_cycles=command.max_cycles,
                    max_idle_cycles=command.max_idle_cycles,
                )
            dispatcher.stop(grace_seconds=0)

        return [
            "Worker summary: "
            f"cycles={summary.cycles} claimed={summary.claimed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"retried={summary.retried} rejected={summary.rejected} swept={summary.swept}",
        ]

    def status(self, command: JobsStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.queue_stats()
            running = repository.list_jobs(JobFilter(statuses=(JobStatus.RUNNING,), limit=20))

        oldest = (
            stats.oldest_pending_created_at.isoformat()
            if stats.oldest_pending_created_at is not None
            else "-"
        )
        lines = [
            f"pending_jobs={stats.pending}",
            f"running_jobs={stats.running}",
            f"completed_jobs={stats.completed}",
            f"failed_jobs={stats.failed}",
            f"oldest_pending_created_at={oldest}",
        ]
        if running:
            lines.append("Active jobs:")
        for job in running:
            started = job.started_at.isoformat() if job.started_at is not None else "-"
            lines.append(
                f"  {job.job_id} type={job.job_type.value} worker={job.worker_id or '-'} "
                f"attempts={job.attempts}/{job.max_attempts} started_at={started}",
            )
        return lines

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        type_filter = _parse_type(command.job_type)
        job_filter = JobFilter(
            statuses=(status_filter,) if status_filter is not None else (),
            job_types=(type_filter,) if type_filter is not None else (),
            commit_id=command.commit_id,
            limit=command.limit,
        )
        with _repository(settings) as repository:
            jobs = repository.list_jobs(job_filter)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
                f"commit={job.commit_id or '-'} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Worker: {job.worker_id or '-'}",
            f"Commit: {job.commit_id or '-'}",
            f"Project: {job.project_id or '-'}",
            f"Dependencies: {len(details.dependencies)}",
        ]
        for dependency in details.dependencies:
            lines.append(f"  depends_on={dependency.depends_on_job_id}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobsRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.retry_job(job_id=command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def retry_insufficient(self, command: JobsRetryInsufficientCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job_ids = repository.retry_failed_jobs(
                error_message=INSUFFICIENT_CREDITS_MESSAGE,
                job_type=JobType.GENERATE_SUMMARY,
                project_ids=command.project_ids,
            )
        lines = [f"Jobs re-queued: {len(job_ids)}"]
        lines.extend(f"  {job_id}" for job_id in job_ids)
        return lines

    def enqueue_commit(self, command: JobsEnqueueCommitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            workflow = WorkflowBuilder(repository).build_commit_workflow(
                CommitWorkItem(
                    commit_id=command.commit_id,
                    sha=command.sha,
                    repository_owner=command.owner,
                    repository_name=command.repo,
                    project_id=command.project_id,
                    base_sha=command.base_sha,
                    commit_message=command.message,
                    recipients=command.recipients,
                    max_attempts=settings.engine.default_max_attempts,
                ),
            )

        lines = [
            f"Workflow {'created' if workflow.created else 'already exists'} "
            f"for commit {workflow.commit_id}",
            f"  fetch_diff={workflow.fetch_diff.job_id}",
        ]
        if workflow.generate_summary is not None:
            lines.append(f"  generate_summary={workflow.generate_summary.job_id}")
        if workflow.send_email is not None:
            lines.append(f"  send_email={workflow.send_email.job_id}")
        return lines

    def prune(self, command: JobsPruneCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(days=command.days)
        with _repository(settings) as repository:
            result = repository.prune_terminal_jobs(older_than=cutoff, dry_run=command.dry_run)
        if result.dry_run:
            return [f"Prune dry-run: {result.matched} job(s) older than {command.days} day(s)"]
        return [f"Pruned {result.deleted} job(s) older than {command.days} day(s)"]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _parse_type(value: str | None) -> JobType | None:
    if value is None:
        return None
    return JobType(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
