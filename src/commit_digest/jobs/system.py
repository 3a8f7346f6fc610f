"""Wire repository, handlers, resolver, sweeper, and dispatcher from settings."""

from __future__ import annotations

from dataclasses import dataclass

from commit_digest.config import Settings
from commit_digest.jobs.collaborators import CommitRecords, DiffSource, EmailSender, Summarizer
from commit_digest.jobs.dispatcher import JobDispatcher
from commit_digest.jobs.echo import (
    EchoDiffSource,
    EchoEmailSender,
    EchoSummarizer,
    InMemoryCommitRecords,
)
from commit_digest.jobs.handlers import (
    FetchDiffHandler,
    GenerateSummaryHandler,
    HandlerRegistry,
    SendEmailHandler,
    WebhookProcessingHandler,
)
from commit_digest.jobs.repository import JobRepository
from commit_digest.jobs.resolver import DependencyResolver
from commit_digest.jobs.sweeper import RecoverySweeper
from commit_digest.jobs.workflow import WorkflowBuilder


@dataclass(slots=True)
class Collaborators:
    """External services the handlers talk to."""

    diff_source: DiffSource
    summarizer: Summarizer
    email_sender: EmailSender
    commit_records: CommitRecords

    @classmethod
    def echo(cls) -> Collaborators:
        return cls(
            diff_source=EchoDiffSource(),
            summarizer=EchoSummarizer(),
            email_sender=EchoEmailSender(),
            commit_records=InMemoryCommitRecords(),
        )


@dataclass(slots=True)
class JobSystem:
    repository: JobRepository
    registry: HandlerRegistry
    workflow_builder: WorkflowBuilder
    sweeper: RecoverySweeper
    dispatcher: JobDispatcher


def build_registry(
    *,
    collaborators: Collaborators,
    workflow_builder: WorkflowBuilder,
    max_attempts: int = 3,
) -> HandlerRegistry:
    return HandlerRegistry(
        [
            FetchDiffHandler(collaborators.diff_source),
            GenerateSummaryHandler(collaborators.summarizer, collaborators.commit_records),
            SendEmailHandler(collaborators.email_sender, collaborators.commit_records),
            WebhookProcessingHandler(
                workflow_builder,
                collaborators.commit_records,
                max_attempts=max_attempts,
            ),
        ],
    )


def build_job_system(
    *,
    settings: Settings,
    repository: JobRepository,
    collaborators: Collaborators,
) -> JobSystem:
    """Assemble an engine over an already initialized repository."""

    engine = settings.engine
    workflow_builder = WorkflowBuilder(repository)
    registry = build_registry(
        collaborators=collaborators,
        workflow_builder=workflow_builder,
        max_attempts=engine.default_max_attempts,
    )
    sweeper = RecoverySweeper(
        repository=repository,
        default_timeout_seconds=engine.stuck_timeout_seconds,
        per_type_timeout_seconds=engine.stuck_timeouts,
    )
    dispatcher = JobDispatcher(
        repository=repository,
        registry=registry,
        resolver=DependencyResolver(),
        sweeper=sweeper,
        worker_id=engine.worker_id,
        max_concurrent_jobs=engine.max_concurrent_jobs,
        poll_interval_seconds=engine.poll_interval_seconds,
        retry_base_seconds=engine.retry_base_seconds,
        retry_max_seconds=engine.retry_max_seconds,
        exponential_backoff=engine.exponential_backoff,
        graceful_shutdown_seconds=engine.graceful_shutdown_seconds,
    )
    return JobSystem(
        repository=repository,
        registry=registry,
        workflow_builder=workflow_builder,
        sweeper=sweeper,
        dispatcher=dispatcher,
    )
