"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from commit_digest.jobs.models import JobCreate, JobType
from commit_digest.jobs.repository import JobRepository


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer shell settings out of tests."""
    for name in list(os.environ):
        if name.startswith("COMMIT_DIGEST_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def _fetch_diff_job(sha: str = "a" * 40, **overrides: object) -> JobCreate:
    fields: dict[str, object] = {
        "job_type": JobType.FETCH_DIFF,
        "data": {
            "commit_sha": sha,
            "repository_owner": "acme",
            "repository_name": "widgets",
        },
    }
    fields.update(overrides)
    return JobCreate(**fields)  # type: ignore[arg-type]


def _summary_job(commit_id: str = "commit-1", **overrides: object) -> JobCreate:
    fields: dict[str, object] = {
        "job_type": JobType.GENERATE_SUMMARY,
        "data": {"commit_id": commit_id, "commit_message": "fix: handle empty diffs"},
        "commit_id": commit_id,
    }
    fields.update(overrides)
    return JobCreate(**fields)  # type: ignore[arg-type]


@pytest.fixture()
def make_fetch_job():
    return _fetch_diff_job


@pytest.fixture()
def make_summary_job():
    return _summary_job
