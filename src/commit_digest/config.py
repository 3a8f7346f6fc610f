"""Runtime configuration for the job engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from commit_digest.jobs.models import MAX_MAX_ATTEMPTS, MIN_MAX_ATTEMPTS, JobType


@dataclass(slots=True)
class EngineSettings:
    """Dispatcher, retry, and recovery settings."""

    max_concurrent_jobs: int = 5
    poll_interval_seconds: float = 2.0
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    exponential_backoff: bool = True
    stuck_timeout_seconds: float = 300.0
    stuck_timeouts: dict[JobType, float] = field(default_factory=dict)
    graceful_shutdown_seconds: float = 30.0
    default_max_attempts: int = 3
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".commit_digest.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = EngineSettings()
        return cls(
            db_path=db_path or Path(os.getenv("COMMIT_DIGEST_DB_PATH", ".commit_digest.db")),
            sqlite_busy_timeout_ms=int(os.getenv("COMMIT_DIGEST_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                max_concurrent_jobs=int(os.getenv("COMMIT_DIGEST_MAX_CONCURRENT_JOBS", "5")),
                poll_interval_seconds=float(
                    os.getenv("COMMIT_DIGEST_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_base_seconds=float(os.getenv("COMMIT_DIGEST_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("COMMIT_DIGEST_RETRY_MAX_SECONDS", "30.0")),
                exponential_backoff=_env_bool("COMMIT_DIGEST_EXPONENTIAL_BACKOFF", default=True),
                stuck_timeout_seconds=float(
                    os.getenv("COMMIT_DIGEST_STUCK_TIMEOUT_SECONDS", "300"),
                ),
                stuck_timeouts=_collect_stuck_timeouts(),
                graceful_shutdown_seconds=float(
                    os.getenv("COMMIT_DIGEST_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                default_max_attempts=int(os.getenv("COMMIT_DIGEST_DEFAULT_MAX_ATTEMPTS", "3")),
                worker_id=os.getenv("COMMIT_DIGEST_WORKER_ID", "").strip() or defaults.worker_id,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        engine = self.engine
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("COMMIT_DIGEST_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if engine.max_concurrent_jobs <= 0:
            raise ValueError("COMMIT_DIGEST_MAX_CONCURRENT_JOBS must be > 0.")
        if engine.poll_interval_seconds < 0:
            raise ValueError("COMMIT_DIGEST_POLL_INTERVAL_SECONDS must be >= 0.")
        if engine.retry_base_seconds < 0:
            raise ValueError("COMMIT_DIGEST_RETRY_BASE_SECONDS must be >= 0.")
        if engine.retry_max_seconds < engine.retry_base_seconds:
            raise ValueError(
                "COMMIT_DIGEST_RETRY_MAX_SECONDS must be >= COMMIT_DIGEST_RETRY_BASE_SECONDS.",
            )
        if engine.stuck_timeout_seconds <= 0:
            raise ValueError("COMMIT_DIGEST_STUCK_TIMEOUT_SECONDS must be > 0.")
        for job_type, seconds in engine.stuck_timeouts.items():
            if seconds <= 0:
                raise ValueError(
                    f"Stuck timeout override must be positive: {job_type.value} -> {seconds}",
                )
        if engine.graceful_shutdown_seconds < 0:
            raise ValueError("COMMIT_DIGEST_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not MIN_MAX_ATTEMPTS <= engine.default_max_attempts <= MAX_MAX_ATTEMPTS:
            raise ValueError(
                "COMMIT_DIGEST_DEFAULT_MAX_ATTEMPTS must be between "
                f"{MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}.",
            )


def _collect_stuck_timeouts() -> dict[JobType, float]:
    raw = os.getenv("COMMIT_DIGEST_STUCK_TIMEOUTS", "").strip()
    if not raw:
        return {}

    overrides: dict[JobType, float] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid COMMIT_DIGEST_STUCK_TIMEOUTS entry: "
                f"{token!r}. Expected format '<job_type>=<seconds>'.",
            )
        type_raw, seconds_raw = (value.strip() for value in token.split("=", 1))
        try:
            job_type = JobType(type_raw)
        except ValueError as error:
            raise ValueError(
                f"Unknown job type in COMMIT_DIGEST_STUCK_TIMEOUTS: {type_raw!r}",
            ) from error
        try:
            seconds = float(seconds_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid COMMIT_DIGEST_STUCK_TIMEOUTS value for {type_raw!r}: {seconds_raw!r}",
            ) from error
        if seconds <= 0:
            raise ValueError(
                "Invalid COMMIT_DIGEST_STUCK_TIMEOUTS value for "
                f"{type_raw!r}: {seconds!r} (must be > 0)",
            )
        overrides[job_type] = seconds
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
