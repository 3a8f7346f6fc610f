"""Summarize a commit diff and record the summary on the commit."""

from __future__ import annotations

from typing import Any

from commit_digest.jobs.collaborators import CommitRecords, Summarizer, SummaryRequest
from commit_digest.jobs.errors import JobValidationError, NonRetryableJobError
from commit_digest.jobs.handlers.base import JobHandler
from commit_digest.jobs.models import JobType, JobView
from commit_digest.jobs.payloads import GenerateSummaryData
from commit_digest.jobs.resolver import ResolvedInputs


class GenerateSummaryHandler(JobHandler):
    job_type = JobType.GENERATE_SUMMARY

    def __init__(self, summarizer: Summarizer, commit_records: CommitRecords) -> None:
        self.summarizer = summarizer
        self.commit_records = commit_records

    def execute(self, job: JobView, inputs: ResolvedInputs) -> dict[str, Any]:
        data = GenerateSummaryData.from_dict(job.data)
        diff_content = inputs.require("diff_content")
        if not isinstance(diff_content, str) or not diff_content.strip():
            raise JobValidationError(
                f"No diff content available for commit {data.commit_id}",
                details={"commit_id": data.commit_id},
            )

        summary = self.summarizer.summarize(
            SummaryRequest(
                diff_content=diff_content,
                commit_message=data.commit_message,
                author=data.author,
                branch=data.branch,
            ),
        )
        if not summary.summary.strip():
            raise NonRetryableJobError(
                f"No summary generated for commit {data.commit_id}",
                details={"commit_id": data.commit_id},
            )

        self.commit_records.mark_summarized(
            commit_id=data.commit_id,
            summary=summary.summary,
            change_type=summary.change_type,
        )
        return {
            "summary": summary.summary,
            "change_type": summary.change_type,
            "commit_id": data.commit_id,
            "confidence": summary.confidence,
            "tokens_used": summary.tokens_used,
        }
