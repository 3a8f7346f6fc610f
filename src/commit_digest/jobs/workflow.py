"""Build multi-step job graphs for commits and digests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from commit_digest.jobs.models import JobCreate, JobFilter, JobType, JobView
from commit_digest.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

WEBHOOK_PRIORITIES = {
    JobType.FETCH_DIFF: 70,
    JobType.GENERATE_SUMMARY: 60,
    JobType.SEND_EMAIL: 50,
}
DEFAULT_PRIORITIES = {
    JobType.FETCH_DIFF: 50,
    JobType.GENERATE_SUMMARY: 40,
    JobType.SEND_EMAIL: 30,
}


@dataclass(slots=True)
class CommitWorkItem:
    """One commit to fetch, summarize, and optionally email."""

    commit_id: str
    sha: str
    repository_owner: str
    repository_name: str
    project_id: str | None = None
    branch: str | None = None
    base_sha: str | None = None
    commit_message: str = ""
    author: str | None = None
    recipients: tuple[str, ...] = ()
    triggered_by: str = "api"
    delivery_id: str | None = None
    max_attempts: int = 3


@dataclass(slots=True)
class DigestWorkItem:
    """Several commits summarized into one email."""

    commits: list[CommitWorkItem]
    recipients: tuple[str, ...]
    project_id: str | None = None
    template_type: str = "digest"
    template_data: dict[str, Any] = field(default_factory=dict)
    digest_key: str | None = None
    max_attempts: int = 3


@dataclass(slots=True)
class CommitWorkflow:
    commit_id: str
    created: bool
    fetch_diff: JobView
    generate_summary: JobView | None
    send_email: JobView | None = None


@dataclass(slots=True)
class DigestWorkflow:
    created: bool
    commits: list[CommitWorkflow]
    send_email: JobView


def fetch_diff_dedup_key(commit_id: str) -> str:
    return f"fetch_diff:{commit_id}"


class WorkflowBuilder:
    """Creates job chains in one transaction, edges after all jobs exist.

    Commit workflows are deduplicated by commit through the ``dedup_key`` of
    their ``fetch_diff`` job, so building twice returns the existing chain.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def build_commit_workflow(self, item: CommitWorkItem) -> CommitWorkflow:
        dedup_key = fetch_diff_dedup_key(item.commit_id)
        existing = self._existing_commit_workflow(item.commit_id, dedup_key=dedup_key)
        if existing is not None:
            return existing

        priorities = WEBHOOK_PRIORITIES if item.triggered_by == "webhook" else DEFAULT_PRIORITIES
        context: dict[str, Any] = {"triggered_by": item.triggered_by}
        if item.delivery_id:
            context["webhook_delivery_id"] = item.delivery_id

        fetch_job = JobCreate(
            job_type=JobType.FETCH_DIFF,
            job_id=str(uuid4()),
            data=_compact(
                {
                    "commit_sha": item.sha,
                    "repository_owner": item.repository_owner,
                    "repository_name": item.repository_name,
                    "branch": item.branch,
                    "base_sha": item.base_sha,
                },
            ),
            priority=priorities[JobType.FETCH_DIFF],
            max_attempts=item.max_attempts,
            context=dict(context),
            project_id=item.project_id,
            commit_id=item.commit_id,
            dedup_key=dedup_key,
        )
        summary_job = JobCreate(
            job_type=JobType.GENERATE_SUMMARY,
            job_id=str(uuid4()),
            data=_compact(
                {
                    "commit_id": item.commit_id,
                    "commit_message": item.commit_message,
                    "author": item.author,
                    "branch": item.branch,
                },
            ),
            priority=priorities[JobType.GENERATE_SUMMARY],
            max_attempts=item.max_attempts,
            context=dict(context),
            project_id=item.project_id,
            commit_id=item.commit_id,
        )
        payloads = [fetch_job, summary_job]
        edges = [(summary_job.job_id, fetch_job.job_id)]
        if item.recipients:
            email_job = JobCreate(
                job_type=JobType.SEND_EMAIL,
                job_id=str(uuid4()),
                data={
                    "commit_ids": [item.commit_id],
                    "recipients": list(item.recipients),
                    "template_type": "single_commit",
                },
                priority=priorities[JobType.SEND_EMAIL],
                max_attempts=item.max_attempts,
                context=dict(context),
                project_id=item.project_id,
                commit_id=item.commit_id,
            )
            payloads.append(email_job)
            edges.append((email_job.job_id, summary_job.job_id))

        try:
            jobs = self.repository.create_jobs(payloads, edges=edges)
        except IntegrityError:
            # Lost a race with a concurrent builder for the same commit.
            existing = self._existing_commit_workflow(item.commit_id, dedup_key=dedup_key)
            if existing is None:
                raise
            return existing

        logger.info(
            "Created workflow for commit %s: %s",
            item.commit_id,
            ", ".join(f"{job.job_type.value}={job.job_id}" for job in jobs),
        )
        return CommitWorkflow(
            commit_id=item.commit_id,
            created=True,
            fetch_diff=jobs[0],
            generate_summary=jobs[1],
            send_email=jobs[2] if len(jobs) > 2 else None,
        )

    def build_digest_workflow(self, item: DigestWorkItem) -> DigestWorkflow:
        """Summarize each commit, then send one email depending on every summary."""

        if not item.commits:
            raise ValueError("Digest workflow requires at least one commit.")
        email_dedup_key = f"send_email:digest:{item.digest_key}" if item.digest_key else None
        if email_dedup_key is not None:
            existing_email = self.repository.find_job_by_dedup_key(dedup_key=email_dedup_key)
            if existing_email is not None:
                return DigestWorkflow(
                    created=False,
                    commits=[self.build_commit_workflow(_without_email(c)) for c in item.commits],
                    send_email=existing_email,
                )

        commit_workflows = [self.build_commit_workflow(_without_email(c)) for c in item.commits]
        summary_jobs = [
            workflow.generate_summary
            for workflow in commit_workflows
            if workflow.generate_summary is not None
        ]
        email_job = JobCreate(
            job_type=JobType.SEND_EMAIL,
            job_id=str(uuid4()),
            data={
                "commit_ids": [workflow.commit_id for workflow in commit_workflows],
                "recipients": list(item.recipients),
                "template_type": item.template_type,
                "template_data": dict(item.template_data),
            },
            priority=DEFAULT_PRIORITIES[JobType.SEND_EMAIL],
            max_attempts=item.max_attempts,
            context={"triggered_by": "digest"},
            project_id=item.project_id,
            dedup_key=email_dedup_key,
        )
        try:
            created = self.repository.create_jobs(
                [email_job],
                edges=[(email_job.job_id or "", job.job_id) for job in summary_jobs],
            )
        except IntegrityError:
            if email_dedup_key is None:
                raise
            existing_email = self.repository.find_job_by_dedup_key(dedup_key=email_dedup_key)
            if existing_email is None:
                raise
            return DigestWorkflow(created=False, commits=commit_workflows, send_email=existing_email)
        return DigestWorkflow(created=True, commits=commit_workflows, send_email=created[0])

    def _existing_commit_workflow(
        self,
        commit_id: str,
        *,
        dedup_key: str,
    ) -> CommitWorkflow | None:
        fetch_job = self.repository.find_job_by_dedup_key(dedup_key=dedup_key)
        if fetch_job is None:
            return None
        related = self.repository.list_jobs(JobFilter(commit_id=commit_id, limit=500))
        by_type: dict[JobType, JobView] = {}
        for job in sorted(related, key=lambda view: view.created_at):
            by_type.setdefault(job.job_type, job)
        return CommitWorkflow(
            commit_id=commit_id,
            created=False,
            fetch_diff=fetch_job,
            generate_summary=by_type.get(JobType.GENERATE_SUMMARY),
            send_email=by_type.get(JobType.SEND_EMAIL),
        )


def _without_email(item: CommitWorkItem) -> CommitWorkItem:
    return replace(item, recipients=())


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}
