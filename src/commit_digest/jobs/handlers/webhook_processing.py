"""Turn an authenticated push event into per-commit workflows."""

from __future__ import annotations

import logging
from typing import Any

from commit_digest.jobs.collaborators import CommitRecord, CommitRecords
from commit_digest.jobs.handlers.base import JobHandler
from commit_digest.jobs.models import JobType, JobView
from commit_digest.jobs.payloads import WebhookProcessingData
from commit_digest.jobs.resolver import ResolvedInputs
from commit_digest.jobs.workflow import CommitWorkItem, WorkflowBuilder

logger = logging.getLogger(__name__)


class WebhookProcessingHandler(JobHandler):
    job_type = JobType.WEBHOOK_PROCESSING

    def __init__(
        self,
        workflow_builder: WorkflowBuilder,
        commit_records: CommitRecords,
        *,
        max_attempts: int = 3,
    ) -> None:
        self.workflow_builder = workflow_builder
        self.commit_records = commit_records
        self.max_attempts = max_attempts

    def execute(self, job: JobView, inputs: ResolvedInputs) -> dict[str, Any]:
        data = WebhookProcessingData.from_dict(job.data)
        if data.event_type != "push":
            logger.info("Ignoring %s event (delivery=%s)", data.event_type, data.delivery_id)
            return {
                "ignored": True,
                "event_type": data.event_type,
                "delivery_id": data.delivery_id,
            }

        project_id = data.project_id or job.project_id
        base_sha = data.before_sha
        commit_ids: list[str] = []
        new_records = 0
        created_workflows = 0
        for commit in data.commits:
            if self.commit_records.ensure_commit(
                CommitRecord(
                    commit_id=commit.commit_id,
                    sha=commit.sha,
                    message=commit.message,
                    author=commit.author,
                    project_id=project_id,
                ),
            ):
                new_records += 1
            workflow = self.workflow_builder.build_commit_workflow(
                CommitWorkItem(
                    commit_id=commit.commit_id,
                    sha=commit.sha,
                    repository_owner=data.repository_owner,
                    repository_name=data.repository_name,
                    project_id=project_id,
                    branch=data.branch,
                    base_sha=base_sha,
                    commit_message=commit.message,
                    author=commit.author,
                    recipients=tuple(data.recipients),
                    triggered_by="webhook",
                    delivery_id=data.delivery_id,
                    max_attempts=self.max_attempts,
                ),
            )
            if workflow.created:
                created_workflows += 1
            commit_ids.append(commit.commit_id)
            base_sha = commit.sha

        return {
            "ignored": False,
            "event_type": data.event_type,
            "delivery_id": data.delivery_id,
            "commit_ids": commit_ids,
            "commits_recorded": new_records,
            "workflows_created": created_workflows,
        }
