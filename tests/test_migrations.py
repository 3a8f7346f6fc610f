from pathlib import Path

import allure
from sqlalchemy import inspect, text

from commit_digest.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261018_0001"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(repository.engine)
    assert {"jobs", "job_dependencies", "job_events"} <= set(inspector.get_table_names())
    job_indexes = {index["name"] for index in inspector.get_indexes("jobs")}
    assert {"idx_jobs_dispatch", "uq_jobs_dedup_key"} <= job_indexes
    repository.close()
