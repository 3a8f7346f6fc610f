"""Persistent job store: jobs, dependency edges, and the audit event stream."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from commit_digest.jobs.errors import (
    INSUFFICIENT_CREDITS_MESSAGE,
    DependencyCycleError,
    InvalidDependencyError,
    JobNotFoundError,
    JobValidationError,
)
from commit_digest.jobs.models import (
    MAX_MAX_ATTEMPTS,
    MAX_PRIORITY,
    MIN_MAX_ATTEMPTS,
    MIN_PRIORITY,
    FailureClass,
    FailureOutcome,
    JobCreate,
    JobDependencyView,
    JobDetails,
    JobEventView,
    JobFilter,
    JobStatus,
    JobType,
    JobView,
    PruneResult,
    QueueStats,
    RecoveredJob,
)
from commit_digest.jobs.payloads import parse_job_data
from commit_digest.storage.alembic_runner import upgrade_head
from commit_digest.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from commit_digest.storage.sqlmodel_models import JobDependencyRow, JobEventRow, JobRow

if TYPE_CHECKING:
    from commit_digest.jobs.resolver import DependencyResolver

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every status transition is a single conditional ``UPDATE`` keyed on the
    expected current status, so concurrent dispatchers sharing the database
    file never both win the same transition.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- creation ---------------------------------------------------------

    def create_job(self, payload: JobCreate, *, depends_on: Sequence[str] = ()) -> JobView:
        """Create a pending job and its dependency edges in one transaction."""

        with Session(self.engine) as session:
            row = self._insert_job(session=session, payload=payload)
            session.flush()
            for position, depends_on_job_id in enumerate(depends_on):
                self._insert_dependency(
                    session=session,
                    job_id=row.id,
                    depends_on_job_id=depends_on_job_id,
                    position=position,
                )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def create_jobs(
        self,
        payloads: Sequence[JobCreate],
        *,
        edges: Sequence[tuple[str, str]] = (),
    ) -> list[JobView]:
        """Create several jobs, then their edges, atomically.

        Edges are ``(job_id, depends_on_job_id)`` pairs and may reference jobs
        created in the same call (their ``job_id`` must be preassigned) or
        jobs that already exist. Nothing is committed if any step fails.
        """

        with Session(self.engine) as session:
            rows = [self._insert_job(session=session, payload=payload) for payload in payloads]
            session.flush()
            positions: dict[str, int] = {}
            for job_id, depends_on_job_id in edges:
                position = positions.get(job_id, 0)
                self._insert_dependency(
                    session=session,
                    job_id=job_id,
                    depends_on_job_id=depends_on_job_id,
                    position=position,
                )
                positions[job_id] = position + 1
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def add_dependency(self, *, job_id: str, depends_on_job_id: str) -> JobDependencyView:
        """Append one dependency edge to a pending job."""

        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != JobStatus.PENDING.value:
                raise InvalidDependencyError(
                    f"Dependencies can only be added to pending jobs, {job_id} is {row.status}",
                )
            position = session.exec(
                select(func.count()).where(col(JobDependencyRow.job_id) == job_id),
            ).one()
            edge = self._insert_dependency(
                session=session,
                job_id=job_id,
                depends_on_job_id=depends_on_job_id,
                position=int(position),
            )
            session.commit()
            session.refresh(edge)
            return _to_dependency_view(edge)

    # -- dispatch ---------------------------------------------------------

    def list_runnable_candidates(
        self,
        *,
        limit: int,
        now: datetime | None = None,
    ) -> list[JobView]:
        """Pending jobs with no incomplete dependency, highest priority first."""

        if limit <= 0:
            return []
        current = to_db_datetime(now or utc_now())
        dependency = aliased(JobRow)
        blocked = (
            exists()
            .where(
                col(JobDependencyRow.job_id) == col(JobRow.id),
                col(JobDependencyRow.depends_on_job_id) == dependency.id,
                dependency.status != JobStatus.COMPLETED.value,
            )
            .correlate(JobRow)
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.PENDING.value,
                    col(JobRow.scheduled_for) <= current,
                    or_(col(JobRow.retry_after).is_(None), col(JobRow.retry_after) <= current),
                    ~blocked,
                )
                .order_by(col(JobRow.priority).desc(), col(JobRow.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def claim_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        expected_attempts: int | None = None,
        now: datetime | None = None,
    ) -> JobView | None:
        """Atomically move one due pending job to running.

        Returns ``None`` if another claimer won, the job is still backing off,
        or its attempts no longer equal ``expected_attempts``. Each claim gets
        a fresh ``claim_id``; results are only accepted for the current one.
        """

        current = now or utc_now()
        due = to_db_datetime(max(current, utc_now()))
        claim_id = uuid4().hex
        statement = sa_update(JobRow).where(
            col(JobRow.id) == job_id,
            col(JobRow.status) == JobStatus.PENDING.value,
            col(JobRow.scheduled_for) <= due,
            or_(col(JobRow.retry_after).is_(None), col(JobRow.retry_after) <= due),
        )
        if expected_attempts is not None:
            statement = statement.where(col(JobRow.attempts) == expected_attempts)
        with Session(self.engine) as session:
            result = session.exec(
                statement.values(
                    status=JobStatus.RUNNING.value,
                    started_at=to_db_datetime(current),
                    completed_at=None,
                    worker_id=worker_id,
                    claim_id=claim_id,
                    updated_at=to_db_datetime(current),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(select(JobRow).where(JobRow.id == job_id)).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.RUNNING,
                details={
                    "worker_id": worker_id,
                    "claim_id": claim_id,
                    "attempts": claimed.attempts,
                },
            )
            session.commit()
            session.refresh(claimed)
            return _to_job_view(claimed)

    def claim_next_runnable(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        capacity: int,
        resolver: DependencyResolver | None = None,
        admit: Callable[[JobView], bool] | None = None,
        now: datetime | None = None,
    ) -> list[JobView]:
        """Claim up to ``capacity`` runnable jobs in dispatch order.

        ``admit`` sees every runnable candidate before its claim and may veto
        it by returning ``False``.
        """

        claimed: list[JobView] = []
        current = now or utc_now()
        for candidate in self.list_runnable_candidates(limit=capacity, now=current):
            if resolver is not None and not resolver.is_runnable(
                candidate,
                self.get_dependency_jobs(job_id=candidate.job_id),
                now=current,
            ):
                continue
            if admit is not None and not admit(candidate):
                continue
            job = self.claim_job(
                job_id=candidate.job_id,
                worker_id=worker_id,
                expected_attempts=candidate.attempts,
                now=current,
            )
            if job is not None:
                claimed.append(job)
        return claimed

    def record_success(
        self,
        *,
        job_id: str,
        result: dict[str, Any],
        worker_id: str | None = None,
        claim_id: str | None = None,
    ) -> bool:
        """Complete a running job, storing ``result`` under ``context['result']``.

        With ``claim_id`` the write only lands if that claim is still current,
        so a run superseded by stuck recovery cannot complete the new one.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.id == job_id)).one_or_none()
            if row is None or row.status != JobStatus.RUNNING.value:
                return False
            context = load_json_object(row.context_json)
            context["result"] = result

            statement = sa_update(JobRow).where(
                col(JobRow.id) == job_id,
                col(JobRow.status) == JobStatus.RUNNING.value,
            )
            if worker_id is not None:
                statement = statement.where(col(JobRow.worker_id) == worker_id)
            if claim_id is not None:
                statement = statement.where(col(JobRow.claim_id) == claim_id)
            outcome = session.exec(
                statement.values(
                    status=JobStatus.COMPLETED.value,
                    context_json=dump_json(context),
                    completed_at=to_db_datetime(now),
                    retry_after=None,
                    error_message=None,
                    error_details_json=None,
                    failure_class=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
                details={"result_keys": sorted(result)},
            )
            session.commit()
            return True

    def record_failure(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        error_message: str,
        retryable: bool,
        retry_after: datetime | None = None,
        failure_class: FailureClass | None = None,
        error_details: dict[str, Any] | None = None,
        worker_id: str | None = None,
        claim_id: str | None = None,
    ) -> FailureOutcome:
        """Record a handler failure on a running job.

        Attempts are incremented. A retryable failure with attempts left goes
        back to pending, eligible again at ``retry_after``; anything else ends
        in failed.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.id == job_id)).one_or_none()
            if row is None or row.status != JobStatus.RUNNING.value:
                return FailureOutcome(recorded=False, status=None, attempts=0)

            attempts = min(row.attempts + 1, row.max_attempts)
            will_retry = retryable and attempts < row.max_attempts
            next_status = JobStatus.PENDING if will_retry else JobStatus.FAILED
            next_retry_after = (retry_after or now) if will_retry else None

            statement = sa_update(JobRow).where(
                col(JobRow.id) == job_id,
                col(JobRow.status) == JobStatus.RUNNING.value,
                col(JobRow.attempts) == row.attempts,
            )
            if worker_id is not None:
                statement = statement.where(col(JobRow.worker_id) == worker_id)
            if claim_id is not None:
                statement = statement.where(col(JobRow.claim_id) == claim_id)
            outcome = session.exec(
                statement.values(
                    status=next_status.value,
                    attempts=attempts,
                    retry_after=(
                        to_db_datetime(next_retry_after) if next_retry_after is not None else None
                    ),
                    started_at=None if will_retry else row.started_at,
                    worker_id=None,
                    claim_id=None,
                    error_message=error_message,
                    error_details_json=dump_json(error_details),
                    failure_class=failure_class.value if failure_class is not None else None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return FailureOutcome(recorded=False, status=None, attempts=row.attempts)

            details: dict[str, object] = {
                "attempts": attempts,
                "max_attempts": row.max_attempts,
                "error_message": error_message,
                "failure_class": failure_class.value if failure_class is not None else None,
            }
            if next_retry_after is not None:
                details["retry_after"] = to_utc_aware_datetime(next_retry_after).isoformat()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled" if will_retry else "failed",
                status_from=JobStatus.RUNNING,
                status_to=next_status,
                details=details,
            )
            session.commit()
        return FailureOutcome(
            recorded=True,
            status=next_status,
            attempts=attempts,
            retry_after=next_retry_after,
        )

    def reject_job(
        self,
        *,
        job_id: str,
        error_message: str,
        error_details: dict[str, Any] | None = None,
    ) -> bool:
        """Fail a pending job directly; used for validation errors."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.id) == job_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    failure_class=FailureClass.VALIDATION.value,
                    error_message=error_message,
                    error_details_json=dump_json(error_details),
                    retry_after=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="rejected",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.FAILED,
                details={"error_message": error_message},
            )
            session.commit()
            return True

    def recover_stuck_jobs(
        self,
        *,
        default_timeout: timedelta,
        per_type_timeouts: dict[JobType, timedelta] | None = None,
        now: datetime | None = None,
    ) -> list[RecoveredJob]:
        """Reset jobs running longer than their type's timeout.

        A recovered job goes back to pending with attempts incremented, or to
        failed once attempts are exhausted.
        """

        current = now or utc_now()
        timeouts = per_type_timeouts or {}
        recovered: list[RecoveredJob] = []
        with Session(self.engine) as session:
            running = session.exec(
                select(JobRow).where(JobRow.status == JobStatus.RUNNING.value),
            ).all()

        for row in running:
            job_type = JobType(row.type)
            timeout = timeouts.get(job_type, default_timeout)
            started_at = to_utc_aware_datetime(row.started_at or row.updated_at)
            running_seconds = (current - started_at).total_seconds()
            if running_seconds <= timeout.total_seconds():
                continue
            item = self._recover_one(
                row=row,
                timeout=timeout,
                running_seconds=running_seconds,
                now=current,
            )
            if item is not None:
                recovered.append(item)
        return recovered

    def _recover_one(
        self,
        *,
        row: JobRow,
        timeout: timedelta,
        running_seconds: float,
        now: datetime,
    ) -> RecoveredJob | None:
        attempts = min(row.attempts + 1, row.max_attempts)
        exhausted = attempts >= row.max_attempts
        next_status = JobStatus.FAILED if exhausted else JobStatus.PENDING
        message = (
            f"Job exceeded running timeout of {int(timeout.total_seconds())}s "
            f"(worker={row.worker_id or '-'})"
            + ("; attempts exhausted" if exhausted else "; reset to pending")
        )
        owner_matches = (
            col(JobRow.worker_id) == row.worker_id
            if row.worker_id is not None
            else col(JobRow.worker_id).is_(None)
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.id) == row.id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                    col(JobRow.attempts) == row.attempts,
                    owner_matches,
                )
                .values(
                    status=next_status.value,
                    attempts=attempts,
                    started_at=row.started_at if exhausted else None,
                    retry_after=None,
                    worker_id=None,
                    claim_id=None,
                    error_message=message,
                    failure_class=FailureClass.STUCK.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=row.id,
                event_type="recovered",
                status_from=JobStatus.RUNNING,
                status_to=next_status,
                details={
                    "attempts": attempts,
                    "timeout_seconds": int(timeout.total_seconds()),
                    "running_seconds": round(running_seconds, 3),
                    "worker_id": row.worker_id,
                },
            )
            session.commit()
        logger.warning(
            "Recovered stuck job %s (%s) after %.1fs; status=%s attempts=%d/%d",
            row.id,
            row.type,
            running_seconds,
            next_status.value,
            attempts,
            row.max_attempts,
        )
        return RecoveredJob(
            job_id=row.id,
            job_type=JobType(row.type),
            attempts=attempts,
            status=next_status,
            running_seconds=running_seconds,
        )

    # -- operator actions -------------------------------------------------

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual operator retry for a failed job; the attempt budget starts over."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != JobStatus.FAILED.value:
                raise RuntimeError(f"Only failed jobs can be retried manually, got {row.status}.")
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.id) == job_id,
                    col(JobRow.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    retry_after=None,
                    started_at=None,
                    completed_at=None,
                    worker_id=None,
                    claim_id=None,
                    error_message=None,
                    error_details_json=None,
                    failure_class=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.PENDING,
                details={"previous_error": row.error_message},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def retry_failed_jobs(
        self,
        *,
        error_message: str = INSUFFICIENT_CREDITS_MESSAGE,
        job_type: JobType = JobType.GENERATE_SUMMARY,
        project_ids: Sequence[str] = (),
    ) -> list[str]:
        """Reset failed jobs with a given error back to pending.

        Used after a resource is replenished, for example to re-run summaries
        that failed for insufficient credits. Returns the reset job ids.
        """

        now = utc_now()
        with Session(self.engine) as session:
            statement = select(JobRow).where(
                JobRow.status == JobStatus.FAILED.value,
                JobRow.type == job_type.value,
                JobRow.error_message == error_message,
            )
            if project_ids:
                statement = statement.where(col(JobRow.project_id).in_(list(project_ids)))
            rows = session.exec(statement.order_by(col(JobRow.created_at).asc())).all()

            reset_ids: list[str] = []
            for row in rows:
                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.id) == row.id,
                        col(JobRow.status) == JobStatus.FAILED.value,
                    )
                    .values(
                        status=JobStatus.PENDING.value,
                        started_at=None,
                        retry_after=None,
                        worker_id=None,
                        claim_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.id,
                    event_type="resource_retry",
                    status_from=JobStatus.FAILED,
                    status_to=JobStatus.PENDING,
                    details={"error_message": error_message},
                )
                reset_ids.append(row.id)
            session.commit()
        if reset_ids:
            logger.info(
                "Reset %d %s job(s) failed with %r",
                len(reset_ids),
                job_type.value,
                error_message,
            )
        return reset_ids

    def prune_terminal_jobs(self, *, older_than: datetime, dry_run: bool = False) -> PruneResult:
        """Delete completed/failed jobs last updated before ``older_than``.

        Jobs that an unfinished job still depends on are kept.
        """

        dependent = aliased(JobRow)
        still_needed = (
            exists()
            .where(
                col(JobDependencyRow.depends_on_job_id) == col(JobRow.id),
                col(JobDependencyRow.job_id) == dependent.id,
                dependent.status.not_in([status.value for status in TERMINAL_STATUSES]),
            )
            .correlate(JobRow)
        )
        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(JobRow.id).where(
                        col(JobRow.status).in_([status.value for status in TERMINAL_STATUSES]),
                        col(JobRow.updated_at) < to_db_datetime(older_than),
                        ~still_needed,
                    ),
                ).all(),
            )
            if dry_run or not job_ids:
                return PruneResult(matched=len(job_ids), deleted=0, dry_run=dry_run)
            result = session.exec(sa_delete(JobRow).where(col(JobRow.id).in_(job_ids)))
            session.commit()
            return PruneResult(matched=len(job_ids), deleted=result.rowcount or 0, dry_run=False)

    # -- reads ------------------------------------------------------------

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def find_job_by_dedup_key(self, *, dedup_key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.dedup_key == dedup_key)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(self, job_filter: JobFilter | None = None) -> list[JobView]:
        """List recent jobs matching a filter, newest first."""

        criteria = job_filter or JobFilter()
        statement = select(JobRow)
        if criteria.statuses:
            statement = statement.where(
                col(JobRow.status).in_([status.value for status in criteria.statuses]),
            )
        if criteria.job_types:
            statement = statement.where(
                col(JobRow.type).in_([job_type.value for job_type in criteria.job_types]),
            )
        if criteria.project_id is not None:
            statement = statement.where(JobRow.project_id == criteria.project_id)
        if criteria.commit_id is not None:
            statement = statement.where(JobRow.commit_id == criteria.commit_id)
        if criteria.min_priority is not None:
            statement = statement.where(col(JobRow.priority) >= criteria.min_priority)
        if criteria.max_priority is not None:
            statement = statement.where(col(JobRow.priority) <= criteria.max_priority)
        if criteria.created_after is not None:
            statement = statement.where(
                col(JobRow.created_at) >= to_db_datetime(criteria.created_after),
            )
        if criteria.created_before is not None:
            statement = statement.where(
                col(JobRow.created_at) < to_db_datetime(criteria.created_before),
            )
        if criteria.error_message is not None:
            statement = statement.where(JobRow.error_message == criteria.error_message)
        statement = statement.order_by(col(JobRow.created_at).desc()).limit(criteria.limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_dependencies(self, *, job_id: str) -> list[JobDependencyView]:
        """Dependency edges of a job in declaration order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobDependencyRow)
                .where(JobDependencyRow.job_id == job_id)
                .order_by(col(JobDependencyRow.position).asc(), col(JobDependencyRow.id).asc()),
            ).all()
        return [_to_dependency_view(row) for row in rows]

    def get_dependency_jobs(self, *, job_id: str) -> list[JobView]:
        """Jobs this job depends on, in declaration order, with latest committed status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .join(JobDependencyRow, col(JobDependencyRow.depends_on_job_id) == col(JobRow.id))
                .where(JobDependencyRow.job_id == job_id)
                .order_by(col(JobDependencyRow.position).asc(), col(JobDependencyRow.id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with dependency edges and event stream."""

        job = self.get_job(job_id=job_id)
        if job is None:
            return None
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(
            job=job,
            dependencies=self.get_dependencies(job_id=job_id),
            events=events,
        )

    def queue_stats(self) -> QueueStats:
        """Aggregate counts per status."""

        with Session(self.engine) as session:
            counts = session.exec(
                select(JobRow.status, func.count()).group_by(JobRow.status),
            ).all()
            oldest = session.exec(
                select(func.min(JobRow.created_at)).where(
                    JobRow.status == JobStatus.PENDING.value,
                ),
            ).one()

        stats = QueueStats(
            oldest_pending_created_at=to_utc_aware_datetime(oldest) if oldest is not None else None,
        )
        for status, count in counts:
            if status == JobStatus.PENDING.value:
                stats.pending = int(count)
            elif status == JobStatus.RUNNING.value:
                stats.running = int(count)
            elif status == JobStatus.COMPLETED.value:
                stats.completed = int(count)
            elif status == JobStatus.FAILED.value:
                stats.failed = int(count)
        return stats

    # -- internals --------------------------------------------------------

    def _insert_job(self, *, session: Session, payload: JobCreate) -> JobRow:
        _validate_create(payload)
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        row = JobRow(
            id=job_id,
            type=JobType(payload.job_type).value,
            status=JobStatus.PENDING.value,
            priority=payload.priority,
            data_json=dump_json(payload.data) or "{}",
            context_json=dump_json(payload.context) or "{}",
            attempts=0,
            max_attempts=payload.max_attempts,
            scheduled_for=to_db_datetime(payload.scheduled_for or now),
            project_id=payload.project_id,
            commit_id=payload.commit_id,
            dedup_key=payload.dedup_key,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="created",
            status_from=None,
            status_to=JobStatus.PENDING,
            details={
                "job_type": row.type,
                "priority": payload.priority,
                "max_attempts": payload.max_attempts,
            },
        )
        return row

    def _insert_dependency(
        self,
        *,
        session: Session,
        job_id: str,
        depends_on_job_id: str,
        position: int,
    ) -> JobDependencyRow:
        if job_id == depends_on_job_id:
            raise InvalidDependencyError(f"Job {job_id} cannot depend on itself")
        for referenced in (job_id, depends_on_job_id):
            if session.get(JobRow, referenced) is None:
                raise JobNotFoundError(referenced)
        duplicate = session.exec(
            select(JobDependencyRow).where(
                JobDependencyRow.job_id == job_id,
                JobDependencyRow.depends_on_job_id == depends_on_job_id,
            ),
        ).one_or_none()
        if duplicate is not None:
            raise InvalidDependencyError(
                f"Dependency already exists: {job_id} -> {depends_on_job_id}",
            )
        cycle = _find_path(session=session, start=depends_on_job_id, target=job_id)
        if cycle is not None:
            raise DependencyCycleError(job_id, depends_on_job_id, [job_id, *cycle])

        edge = JobDependencyRow(
            job_id=job_id,
            depends_on_job_id=depends_on_job_id,
            position=position,
            created_at=to_db_datetime(utc_now()),
        )
        session.add(edge)
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="dependency_added",
            status_from=None,
            status_to=None,
            details={"depends_on_job_id": depends_on_job_id, "position": position},
        )
        session.flush()
        return edge

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _validate_create(payload: JobCreate) -> None:
    try:
        JobType(payload.job_type)
    except ValueError as error:
        raise JobValidationError(f"Unsupported job type: {payload.job_type!r}") from error
    if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
        raise JobValidationError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {payload.priority}",
        )
    if not MIN_MAX_ATTEMPTS <= payload.max_attempts <= MAX_MAX_ATTEMPTS:
        raise JobValidationError(
            f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}, "
            f"got {payload.max_attempts}",
        )
    parse_job_data(payload.job_type, payload.data)


def _find_path(*, session: Session, start: str, target: str) -> list[str] | None:
    """Depth-first search along dependency edges from ``start`` to ``target``."""

    stack: list[tuple[str, list[str]]] = [(start, [start])]
    visited: set[str] = set()
    while stack:
        current, path = stack.pop()
        if current == target:
            return path
        if current in visited:
            continue
        visited.add(current)
        upstream = session.exec(
            select(JobDependencyRow.depends_on_job_id).where(JobDependencyRow.job_id == current),
        ).all()
        for next_id in upstream:
            if next_id not in visited:
                stack.append((next_id, [*path, next_id]))
    return None


def _to_dependency_view(row: JobDependencyRow) -> JobDependencyView:
    return JobDependencyView(
        job_id=row.job_id,
        depends_on_job_id=row.depends_on_job_id,
        position=row.position,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: JobRow) -> JobView:
    error_details = load_json_object(row.error_details_json) if row.error_details_json else None
    return JobView(
        job_id=row.id,
        job_type=JobType(row.type),
        status=JobStatus(row.status),
        priority=row.priority,
        data=load_json_object(row.data_json),
        context=load_json_object(row.context_json),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        scheduled_for=to_utc_aware_datetime(row.scheduled_for),
        retry_after=to_utc_aware_datetime(row.retry_after) if row.retry_after is not None else None,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        error_message=row.error_message,
        error_details=error_details,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        worker_id=row.worker_id,
        project_id=row.project_id,
        commit_id=row.commit_id,
        dedup_key=row.dedup_key,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        claim_id=row.claim_id,
    )
