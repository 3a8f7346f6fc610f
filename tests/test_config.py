from __future__ import annotations

from pathlib import Path

import allure
import pytest

from commit_digest.config import EngineSettings, Settings
from commit_digest.jobs.models import JobType

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Configuration"),
]


def test_defaults_match_engine_contract() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".commit_digest.db")
    assert settings.engine.max_concurrent_jobs == 5
    assert settings.engine.poll_interval_seconds == 2.0
    assert settings.engine.retry_base_seconds == 1.0
    assert settings.engine.retry_max_seconds == 30.0
    assert settings.engine.exponential_backoff is True
    assert settings.engine.stuck_timeout_seconds == 300.0
    assert settings.engine.stuck_timeouts == {}
    assert settings.engine.graceful_shutdown_seconds == 30.0
    assert settings.engine.worker_id
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COMMIT_DIGEST_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("COMMIT_DIGEST_MAX_CONCURRENT_JOBS", "2")
    monkeypatch.setenv("COMMIT_DIGEST_EXPONENTIAL_BACKOFF", "off")
    monkeypatch.setenv("COMMIT_DIGEST_STUCK_TIMEOUTS", "generate_summary=900, fetch_diff=60")
    monkeypatch.setenv("COMMIT_DIGEST_WORKER_ID", "  worker-a ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.engine.max_concurrent_jobs == 2
    assert settings.engine.exponential_backoff is False
    assert settings.engine.stuck_timeouts == {
        JobType.GENERATE_SUMMARY: 900.0,
        JobType.FETCH_DIFF: 60.0,
    }
    assert settings.engine.worker_id == "worker-a"


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COMMIT_DIGEST_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("value", "match"),
    [
        ("send_email", "Expected format"),
        ("deploy=10", "Unknown job type"),
        ("fetch_diff=soon", "Invalid COMMIT_DIGEST_STUCK_TIMEOUTS value"),
        ("fetch_diff=0", "must be > 0"),
    ],
)
def test_invalid_stuck_timeouts_are_rejected(
    monkeypatch: pytest.MonkeyPatch,
    value: str,
    match: str,
) -> None:
    monkeypatch.setenv("COMMIT_DIGEST_STUCK_TIMEOUTS", value)

    with pytest.raises(ValueError, match=match):
        Settings.from_env()


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COMMIT_DIGEST_EXPONENTIAL_BACKOFF", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("engine", "match"),
    [
        (EngineSettings(max_concurrent_jobs=0), "MAX_CONCURRENT_JOBS"),
        (EngineSettings(retry_base_seconds=5, retry_max_seconds=1), "RETRY_MAX_SECONDS"),
        (EngineSettings(stuck_timeout_seconds=0), "STUCK_TIMEOUT_SECONDS"),
        (EngineSettings(default_max_attempts=11), "DEFAULT_MAX_ATTEMPTS"),
        (EngineSettings(graceful_shutdown_seconds=-1), "GRACEFUL_SHUTDOWN_SECONDS"),
    ],
)
def test_validate_rejects_out_of_range_values(engine: EngineSettings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        Settings(engine=engine).validate()
