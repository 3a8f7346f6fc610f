"""Local deterministic collaborators for running the engine without external services."""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Sequence
from dataclasses import replace

from commit_digest.jobs.collaborators import (
    CommitRecord,
    DiffRequest,
    DiffResult,
    EmailMessage,
    EmailReceipt,
    SummaryRequest,
    SummaryResult,
)

logger = logging.getLogger(__name__)

_CHANGE_TYPE_PREFIXES = (
    ("fix", "bugfix"),
    ("feat", "feature"),
    ("refactor", "refactor"),
    ("docs", "docs"),
    ("test", "test"),
    ("chore", "chore"),
)


class EchoDiffSource:
    def fetch_diff(self, request: DiffRequest) -> DiffResult:
        base = request.base_sha or "empty-tree"
        path = f"{request.repository_name}/CHANGES.md"
        diff_content = (
            f"diff --git a/{path} b/{path}\n"
            f"index {base[:7]}..{request.head_sha[:7]}\n"
            f"--- a/{path}\n"
            f"+++ b/{path}\n"
            "@@ -0,0 +1 @@\n"
            f"+{request.repository_owner}/{request.repository_name}@{request.head_sha}\n"
        )
        return DiffResult(diff_content=diff_content, files_changed=1, additions=1, deletions=0)


class EchoSummarizer:
    def summarize(self, request: SummaryRequest) -> SummaryResult:
        headline = request.commit_message.strip().splitlines()[0] if request.commit_message else ""
        changed = sum(1 for line in request.diff_content.splitlines() if line.startswith("diff "))
        summary = f"{headline or 'Commit'} ({changed} file(s) changed)"
        return SummaryResult(
            summary=summary,
            change_type=_guess_change_type(headline),
            confidence=1.0,
            tokens_used=len(request.diff_content.split()),
        )


class EchoEmailSender:
    """Records messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> EmailReceipt:
        digest = hashlib.sha256(
            "\n".join([*message.recipients, message.subject, message.body]).encode("utf-8"),
        ).hexdigest()
        with self._lock:
            self.sent.append(message)
        logger.info("Echo email %r to %s", message.subject, ", ".join(message.recipients))
        return EmailReceipt(message_id=f"echo-{digest[:16]}")


class InMemoryCommitRecords:
    """Thread-safe commit records kept in process memory."""

    def __init__(self) -> None:
        self._records: dict[str, CommitRecord] = {}
        self._lock = threading.Lock()

    def ensure_commit(self, record: CommitRecord) -> bool:
        with self._lock:
            if record.commit_id in self._records:
                return False
            self._records[record.commit_id] = replace(record)
            return True

    def get_commits(self, commit_ids: Sequence[str]) -> list[CommitRecord]:
        with self._lock:
            return [
                replace(self._records[commit_id])
                for commit_id in commit_ids
                if commit_id in self._records
            ]

    def mark_summarized(self, *, commit_id: str, summary: str, change_type: str) -> None:
        with self._lock:
            record = self._records.setdefault(
                commit_id,
                CommitRecord(commit_id=commit_id, sha=commit_id),
            )
            record.summary = summary
            record.change_type = change_type

    def mark_email_sent(self, commit_ids: Sequence[str]) -> None:
        with self._lock:
            for commit_id in commit_ids:
                record = self._records.get(commit_id)
                if record is not None:
                    record.email_sent = True


def _guess_change_type(headline: str) -> str:
    lowered = headline.lower()
    for prefix, change_type in _CHANGE_TYPE_PREFIXES:
        if lowered.startswith(prefix):
            return change_type
    return "other"
