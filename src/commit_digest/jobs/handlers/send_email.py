"""Render and send a summary email for one or more commits."""

from __future__ import annotations

from typing import Any

from commit_digest.jobs.collaborators import CommitRecords, EmailMessage, EmailSender
from commit_digest.jobs.errors import RetryableJobError
from commit_digest.jobs.handlers.base import JobHandler
from commit_digest.jobs.models import JobType, JobView
from commit_digest.jobs.payloads import SendEmailData
from commit_digest.jobs.resolver import ResolvedInputs

PREVIEW_CHARS = 200


class SendEmailHandler(JobHandler):
    job_type = JobType.SEND_EMAIL

    def __init__(self, email_sender: EmailSender, commit_records: CommitRecords) -> None:
        self.email_sender = email_sender
        self.commit_records = commit_records

    def execute(self, job: JobView, inputs: ResolvedInputs) -> dict[str, Any]:
        data = SendEmailData.from_dict(job.data)
        summaries = self._collect_summaries(data.commit_ids, inputs)
        missing = [commit_id for commit_id in data.commit_ids if commit_id not in summaries]
        if missing:
            # Summaries may still be in flight when the job was created standalone.
            raise RetryableJobError(
                f"Commits without summaries: {', '.join(missing)}",
                details={"missing_commit_ids": missing},
            )

        subject, body = _render(data, summaries)
        receipt = self.email_sender.send(
            EmailMessage(
                recipients=data.recipients,
                subject=subject,
                body=body,
                tags={"template_type": data.template_type},
            ),
        )
        self.commit_records.mark_email_sent(data.commit_ids)
        return {
            "message_id": receipt.message_id,
            "recipients": data.recipients,
            "commit_count": len(data.commit_ids),
            "template_type": data.template_type,
            "subject": subject,
            "email_content_preview": body[:PREVIEW_CHARS],
        }

    def _collect_summaries(
        self,
        commit_ids: list[str],
        inputs: ResolvedInputs,
    ) -> dict[str, dict[str, str]]:
        wanted = set(commit_ids)
        summaries: dict[str, dict[str, str]] = {}
        for result in inputs.dependency_results:
            commit_id = result.get("commit_id")
            summary = result.get("summary")
            if commit_id in wanted and isinstance(summary, str) and summary:
                summaries[commit_id] = {
                    "summary": summary,
                    "change_type": str(result.get("change_type") or "other"),
                }

        unresolved = [commit_id for commit_id in commit_ids if commit_id not in summaries]
        if unresolved:
            for record in self.commit_records.get_commits(unresolved):
                if record.summary:
                    summaries[record.commit_id] = {
                        "summary": record.summary,
                        "change_type": record.change_type or "other",
                    }
        return summaries


def _render(data: SendEmailData, summaries: dict[str, dict[str, str]]) -> tuple[str, str]:
    count = len(data.commit_ids)
    title = data.template_data.get("title")
    if data.template_type == "single_commit":
        first = summaries[data.commit_ids[0]]["summary"]
        subject = title or f"Commit summary: {first.splitlines()[0][:80]}"
    elif data.template_type == "weekly_summary":
        subject = title or f"Weekly summary: {count} commit(s)"
    else:
        subject = title or f"Commit digest: {count} commit(s)"

    lines = []
    for commit_id in data.commit_ids:
        entry = summaries[commit_id]
        lines.append(f"[{entry['change_type']}] {commit_id}: {entry['summary']}")
    return str(subject), "\n".join(lines)
