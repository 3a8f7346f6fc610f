"""Fetch a commit diff from the source-control host."""

from __future__ import annotations

from typing import Any

from commit_digest.jobs.collaborators import DiffRequest, DiffSource
from commit_digest.jobs.handlers.base import JobHandler
from commit_digest.jobs.models import JobType, JobView
from commit_digest.jobs.payloads import FetchDiffData
from commit_digest.jobs.resolver import ResolvedInputs

# Git's well-known empty tree; diffing against it yields the whole commit.
EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


class FetchDiffHandler(JobHandler):
    job_type = JobType.FETCH_DIFF

    def __init__(self, diff_source: DiffSource) -> None:
        self.diff_source = diff_source

    def execute(self, job: JobView, inputs: ResolvedInputs) -> dict[str, Any]:
        data = FetchDiffData.from_dict(job.data)
        base_sha = data.base_sha
        if not base_sha or set(base_sha) == {"0"}:
            base_sha = EMPTY_TREE_SHA

        diff = self.diff_source.fetch_diff(
            DiffRequest(
                repository_owner=data.repository_owner,
                repository_name=data.repository_name,
                head_sha=data.commit_sha,
                base_sha=base_sha,
            ),
        )
        return {
            "diff_content": diff.diff_content,
            "files_changed": diff.files_changed,
            "additions": diff.additions,
            "deletions": diff.deletions,
            "commit_sha": data.commit_sha,
        }
