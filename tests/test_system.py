from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from commit_digest.config import EngineSettings, Settings
from commit_digest.jobs.models import JobCreate, JobStatus, JobType
from commit_digest.jobs.sweeper import RecoverySweeper
from commit_digest.jobs.system import Collaborators, build_job_system
from commit_digest.storage.common import utc_now

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Recovery & Wiring"),
]


def test_job_system_wires_settings_into_dispatcher(repository) -> None:
    settings = Settings(
        engine=EngineSettings(
            max_concurrent_jobs=3,
            poll_interval_seconds=0.5,
            stuck_timeout_seconds=120,
            stuck_timeouts={JobType.GENERATE_SUMMARY: 600},
            worker_id="engine-1",
        ),
    )

    system = build_job_system(
        settings=settings,
        repository=repository,
        collaborators=Collaborators.echo(),
    )

    assert system.dispatcher.worker_id == "engine-1"
    assert system.dispatcher.max_concurrent_jobs == 3
    assert system.dispatcher.sweeper is system.sweeper
    assert system.registry.types() == sorted(JobType, key=lambda job_type: job_type.value)
    assert system.sweeper.timeout_for(JobType.GENERATE_SUMMARY) == timedelta(seconds=600)
    assert system.sweeper.timeout_for(JobType.SEND_EMAIL) == timedelta(seconds=120)


def test_webhook_job_fans_out_and_completes_end_to_end(repository) -> None:
    settings = Settings(engine=EngineSettings(retry_base_seconds=0, worker_id="engine-1"))
    collaborators = Collaborators.echo()
    system = build_job_system(
        settings=settings,
        repository=repository,
        collaborators=collaborators,
    )
    repository.create_job(
        JobCreate(
            job_type=JobType.WEBHOOK_PROCESSING,
            data={
                "event_type": "push",
                "repository_owner": "acme",
                "repository_name": "widgets",
                "project_id": "p1",
                "commits": [
                    {"sha": "1" * 40, "message": "feat: first"},
                    {"sha": "2" * 40, "message": "docs: second"},
                ],
                "recipients": ["dev@example.com"],
            },
            priority=100,
        ),
    )

    total = system.dispatcher.run_until_idle(max_cycles=20)

    stats = repository.queue_stats()
    assert (stats.completed, stats.failed, stats.pending) == (7, 0, 0)
    assert total.succeeded == 7
    assert len(collaborators.email_sender.sent) == 2
    records = collaborators.commit_records.get_commits(["1" * 40, "2" * 40])
    assert [record.change_type for record in records] == ["feature", "docs"]
    assert all(record.email_sent for record in records)


def test_sweeper_rejects_non_positive_timeout(repository) -> None:
    with pytest.raises(ValueError, match="default_timeout_seconds"):
        RecoverySweeper(repository=repository, default_timeout_seconds=0)


def test_sweeper_reports_recovered_jobs(repository, make_fetch_job) -> None:
    job = repository.create_job(make_fetch_job())
    repository.claim_job(job_id=job.job_id, worker_id="gone", now=utc_now() - timedelta(minutes=3))
    sweeper = RecoverySweeper(
        repository=repository,
        default_timeout_seconds=600,
        per_type_timeout_seconds={JobType.FETCH_DIFF: 60},
    )

    recovered = sweeper.sweep()

    assert [item.job_id for item in recovered] == [job.job_id]
    assert recovered[0].status == JobStatus.PENDING
    assert recovered[0].running_seconds >= 180
