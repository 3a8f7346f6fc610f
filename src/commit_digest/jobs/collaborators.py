"""Outbound collaborator contracts used by job handlers."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class DiffRequest:
    repository_owner: str
    repository_name: str
    head_sha: str
    base_sha: str | None = None


@dataclass(slots=True)
class DiffResult:
    """Unified diff text plus file stats for one commit."""

    diff_content: str
    files_changed: int
    additions: int
    deletions: int


@dataclass(slots=True)
class SummaryRequest:
    diff_content: str
    commit_message: str = ""
    author: str | None = None
    branch: str | None = None


@dataclass(slots=True)
class SummaryResult:
    summary: str
    change_type: str
    confidence: float | None = None
    tokens_used: int | None = None


@dataclass(slots=True)
class EmailMessage:
    recipients: list[str]
    subject: str
    body: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class EmailReceipt:
    message_id: str


@dataclass(slots=True)
class CommitRecord:
    """Domain commit as seen by the engine."""

    commit_id: str
    sha: str
    message: str = ""
    author: str | None = None
    project_id: str | None = None
    summary: str | None = None
    change_type: str | None = None
    email_sent: bool = False


class DiffSource(Protocol):
    """Source-control diff retrieval."""

    def fetch_diff(self, request: DiffRequest) -> DiffResult:
        """Return the diff between ``base_sha`` and ``head_sha``."""


class Summarizer(Protocol):
    """AI summarization of a diff."""

    def summarize(self, request: SummaryRequest) -> SummaryResult:
        """Summarize a diff and classify the change."""


class EmailSender(Protocol):
    """Email dispatch."""

    def send(self, message: EmailMessage) -> EmailReceipt:
        """Send a message and return the provider message id."""


class CommitRecords(Protocol):
    """Commit-record mutation in the surrounding domain datastore."""

    def ensure_commit(self, record: CommitRecord) -> bool:
        """Create the commit record if missing; return ``True`` when created."""

    def get_commits(self, commit_ids: Sequence[str]) -> list[CommitRecord]:
        """Return known commits in the requested order, skipping unknown ids."""

    def mark_summarized(self, *, commit_id: str, summary: str, change_type: str) -> None:
        """Store the summary once it was generated successfully."""

    def mark_email_sent(self, commit_ids: Sequence[str]) -> None:
        """Flag commits as included in a sent email."""
