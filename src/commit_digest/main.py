"""CLI entrypoint for commit-digest."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from commit_digest import __version__
from commit_digest.jobs.controllers import (
    JobsCliController,
    JobsEnqueueCommitCommand,
    JobsInspectCommand,
    JobsListCommand,
    JobsPruneCommand,
    JobsRetryCommand,
    JobsRetryInsufficientCommand,
    JobsStatusCommand,
    JobsWorkerCommand,
)
from commit_digest.jobs.errors import JobEngineError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="commit-digest")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging level for engine messages.",
)
def commit_digest(log_level: str) -> None:
    """Commit digest job engine CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@commit_digest.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one dispatch cycle or loop until the queue is idle.",
)
@click.option(
    "--serve",
    is_flag=True,
    default=False,
    help="Poll in the background until SIGINT/SIGTERM, then drain in-flight jobs.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for dispatch cycles in loop mode.",
)
@click.option(
    "--max-idle-cycles",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop the loop after this many consecutive idle cycles.",
)
@click.option(
    "--echo-collaborators/--no-echo-collaborators",
    default=True,
    show_default=True,
    help="Use local deterministic diff, summary, and email collaborators.",
)
def jobs_worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    serve: bool,
    max_cycles: int | None,
    max_idle_cycles: int,
    echo_collaborators: bool,
) -> None:
    """Run the job dispatcher."""

    mode = "serve" if serve else ("once" if once else "loop")
    _emit_lines(
        _guarded(
            lambda: JOBS_CONTROLLER.run_worker(
                JobsWorkerCommand(
                    db_path=db_path,
                    mode=mode,
                    max_cycles=max_cycles,
                    max_idle_cycles=max_idle_cycles,
                    echo_collaborators=echo_collaborators,
                ),
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_status(db_path: Path | None) -> None:
    """Show queue counters and running jobs."""

    _emit_lines(JOBS_CONTROLLER.status(JobsStatusCommand(db_path=db_path)))


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--type",
    "job_type",
    type=click.Choice(
        ["fetch_diff", "generate_summary", "send_email", "webhook_processing"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional job type filter.",
)
@click.option("--commit-id", default=None, help="Optional commit id filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    job_type: str | None,
    commit_id: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            JobsListCommand(
                db_path=db_path,
                status=status,
                job_type=job_type,
                commit_id=commit_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with dependencies and event history."""

    _emit_lines(JOBS_CONTROLLER.inspect_job(JobsInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue one failed job with a fresh attempt budget."""

    _emit_lines(
        _guarded(
            lambda: JOBS_CONTROLLER.retry_job(JobsRetryCommand(db_path=db_path, job_id=job_id)),
        ),
    )


@jobs.command("retry-insufficient")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--project-id",
    "project_ids",
    multiple=True,
    help="Restrict to these projects. Can be repeated.",
)
def jobs_retry_insufficient(db_path: Path | None, project_ids: tuple[str, ...]) -> None:
    """Re-queue summaries that failed with *Insufficient credits*."""

    _emit_lines(
        JOBS_CONTROLLER.retry_insufficient(
            JobsRetryInsufficientCommand(db_path=db_path, project_ids=project_ids),
        ),
    )


@jobs.command("enqueue-commit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--commit-id", required=True, help="Commit record id.")
@click.option("--project-id", required=True, help="Project id.")
@click.option("--owner", required=True, help="Repository owner.")
@click.option("--repo", required=True, help="Repository name.")
@click.option("--sha", required=True, help="Commit SHA.")
@click.option("--message", default="", help="Commit message.")
@click.option("--base-sha", default=None, help="Parent SHA to diff against.")
@click.option(
    "--recipient",
    "recipients",
    multiple=True,
    help="Email recipient. Can be repeated; omit to skip the email step.",
)
def jobs_enqueue_commit(  # noqa: PLR0913
    db_path: Path | None,
    commit_id: str,
    project_id: str,
    owner: str,
    repo: str,
    sha: str,
    message: str,
    base_sha: str | None,
    recipients: tuple[str, ...],
) -> None:
    """Create the fetch, summarize, and email chain for one commit."""

    _emit_lines(
        _guarded(
            lambda: JOBS_CONTROLLER.enqueue_commit(
                JobsEnqueueCommitCommand(
                    db_path=db_path,
                    commit_id=commit_id,
                    project_id=project_id,
                    owner=owner,
                    repo=repo,
                    sha=sha,
                    message=message,
                    base_sha=base_sha,
                    recipients=recipients,
                ),
            ),
        ),
    )


@jobs.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=1),
    required=True,
    help="Delete finished jobs last updated more than this many days ago.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Only count matching jobs.")
def jobs_prune(db_path: Path | None, days: int, dry_run: bool) -> None:
    """Delete old completed and failed jobs."""

    _emit_lines(
        JOBS_CONTROLLER.prune(JobsPruneCommand(db_path=db_path, days=days, dry_run=dry_run)),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (JobEngineError, RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    commit_digest()
