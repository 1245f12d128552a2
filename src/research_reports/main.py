"""CLI entrypoint for research-reports."""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from research_reports import __version__
from research_reports.errors import (
    BugReportNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
    ReportRequestError,
)
from research_reports.reports.controllers import (
    BugCommand,
    BugListCommand,
    BugPatternsCommand,
    BugUpdateCommand,
    JobCommand,
    JobCreateCommand,
    JobListCommand,
    JobRerunCommand,
    QueueDrainCommand,
    ReportCliController,
)

click.rich_click.USE_MARKDOWN = True
REPORT_CONTROLLER = ReportCliController()

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_USER_ERRORS = (
    ReportRequestError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
    BugReportNotFoundError,
)

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="research-reports")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for scheduler and storage messages.",
)
def research_reports(log_level: str) -> None:
    """Research report job engine CLI."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@research_reports.group()
def jobs() -> None:
    """Report job commands."""


@jobs.command("create")
@db_path_option
@click.option("--subject", "subject_name", required=True, help="Company name to research.")
@click.option("--geography", default=None, help="Geography focus. Defaults to Global.")
@click.option("--industry", default=None, help="Optional industry label.")
@click.option(
    "--report-type",
    default="GENERIC",
    show_default=True,
    help="GENERIC, INDUSTRIALS, PE, FS or INSURANCE.",
)
@click.option(
    "--section",
    "sections",
    multiple=True,
    help="Section to generate. Can be repeated; defaults to all sections.",
)
@click.option("--focus-area", "focus_areas", multiple=True, help="Focus area. Can be repeated.")
@click.option(
    "--visibility",
    "visibility_scope",
    default="PRIVATE",
    show_default=True,
    help="PRIVATE, GROUP or FIRM.",
)
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Regenerate even if a finished report exists for the subject.",
)
@click.option("--wait", is_flag=True, default=False, help="Drain the queue before returning.")
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    subject_name: str,
    geography: str | None,
    industry: str | None,
    report_type: str,
    sections: tuple[str, ...],
    focus_areas: tuple[str, ...],
    visibility_scope: str,
    force: bool,
    wait: bool,
) -> None:
    """Enqueue a new report job."""

    _emit(
        lambda: REPORT_CONTROLLER.create_job(
            JobCreateCommand(
                db_path=db_path,
                subject_name=subject_name,
                geography=geography,
                industry=industry,
                report_type=report_type,
                sections=sections,
                focus_areas=focus_areas,
                visibility_scope=visibility_scope,
                force=force,
                wait=wait,
            ),
        ),
    )


@jobs.command("list")
@db_path_option
@click.option(
    "--status",
    default=None,
    help="Filter by effective status, for example running_with_errors.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=50,
    show_default=True,
    help="Max rows.",
)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def jobs_list(db_path: Path | None, status: str | None, limit: int, offset: int) -> None:
    """List report jobs, newest first."""

    _emit(
        lambda: REPORT_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit, offset=offset),
        ),
    )


@jobs.command("show")
@db_path_option
@click.argument("job_id")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Show one job with its stages and event history."""

    _emit(lambda: REPORT_CONTROLLER.show_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@db_path_option
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a queued or running job."""

    _emit(lambda: REPORT_CONTROLLER.cancel_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("delete")
@db_path_option
@click.argument("job_id")
def jobs_delete(db_path: Path | None, job_id: str) -> None:
    """Delete a job together with its stages and events."""

    _emit(lambda: REPORT_CONTROLLER.delete_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("rerun")
@db_path_option
@click.argument("job_id")
@click.option(
    "--section",
    "sections",
    multiple=True,
    help="Only rerun these sections. Can be repeated.",
)
@click.option(
    "--only-failed",
    is_flag=True,
    default=False,
    help="Rerun stages that did not complete and reuse the rest.",
)
@click.option("--wait", is_flag=True, default=False, help="Drain the queue before returning.")
def jobs_rerun(
    db_path: Path | None,
    job_id: str,
    sections: tuple[str, ...],
    only_failed: bool,
    wait: bool,
) -> None:
    """Create a fresh job from a previous job's inputs."""

    _emit(
        lambda: REPORT_CONTROLLER.rerun_job(
            JobRerunCommand(
                db_path=db_path,
                job_id=job_id,
                sections=sections,
                only_failed=only_failed,
                wait=wait,
            ),
        ),
    )


@jobs.command("position")
@db_path_option
@click.argument("job_id")
def jobs_position(db_path: Path | None, job_id: str) -> None:
    """Show how many jobs will run before a queued job."""

    _emit(lambda: REPORT_CONTROLLER.queue_position(JobCommand(db_path=db_path, job_id=job_id)))


@research_reports.group()
def queue() -> None:
    """Queue execution commands."""


@queue.command("drain")
@db_path_option
def queue_drain(db_path: Path | None) -> None:
    """Run queued jobs one at a time until the queue is empty."""

    _emit(lambda: REPORT_CONTROLLER.drain_queue(QueueDrainCommand(db_path=db_path)))


@research_reports.group()
def stages() -> None:
    """Stage graph commands."""


@stages.command("list")
def stages_list() -> None:
    """List stages in execution order with their dependencies."""

    _emit(REPORT_CONTROLLER.list_stages)


@stages.command("expand")
@click.argument("sections", nargs=-1)
def stages_expand(sections: tuple[str, ...]) -> None:
    """Show the stages a request for SECTIONS would run."""

    _emit(lambda: REPORT_CONTROLLER.expand_stages(sections))


@research_reports.group()
def bugs() -> None:
    """Bug report triage commands."""


@bugs.command("list")
@db_path_option
@click.option("--status", default=None, help="open, acknowledged, investigating, ...")
@click.option("--severity", default=None, help="critical, error or warning.")
@click.option("--category", default=None, help="rate_limit, parse_error, timeout, ...")
@click.option("--stage", default=None, help="Stage id.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
    help="Page size.",
)
def bugs_list(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    severity: str | None,
    category: str | None,
    stage: str | None,
    page: int,
    limit: int,
) -> None:
    """List bug reports with summary counters."""

    _emit(
        lambda: REPORT_CONTROLLER.list_bug_reports(
            BugListCommand(
                db_path=db_path,
                status=status,
                severity=severity,
                category=category,
                stage=stage,
                page=page,
                limit=limit,
            ),
        ),
    )


@bugs.command("show")
@db_path_option
@click.argument("bug_report_id")
def bugs_show(db_path: Path | None, bug_report_id: str) -> None:
    """Show one bug report."""

    _emit(
        lambda: REPORT_CONTROLLER.show_bug_report(
            BugCommand(db_path=db_path, bug_report_id=bug_report_id),
        ),
    )


@bugs.command("update")
@db_path_option
@click.argument("bug_report_id")
@click.option("--status", default=None, help="New triage status.")
@click.option("--notes", "resolution_notes", default=None, help="Resolution notes.")
@click.option("--actor", default=None, help="Who resolved it. Defaults to admin.")
def bugs_update(
    db_path: Path | None,
    bug_report_id: str,
    status: str | None,
    resolution_notes: str | None,
    actor: str | None,
) -> None:
    """Update triage status or resolution notes."""

    _emit(
        lambda: REPORT_CONTROLLER.update_bug_report(
            BugUpdateCommand(
                db_path=db_path,
                bug_report_id=bug_report_id,
                status=status,
                resolution_notes=resolution_notes,
                actor=actor,
            ),
        ),
    )


@bugs.command("delete")
@db_path_option
@click.argument("bug_report_id")
def bugs_delete(db_path: Path | None, bug_report_id: str) -> None:
    """Delete a bug report."""

    _emit(
        lambda: REPORT_CONTROLLER.delete_bug_report(
            BugCommand(db_path=db_path, bug_report_id=bug_report_id),
        ),
    )


@bugs.command("patterns")
@db_path_option
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=7,
    show_default=True,
    help="Look-back window.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max reports scanned (default 50, capped at 200).",
)
@click.option(
    "--group-by-fingerprint",
    is_flag=True,
    default=False,
    help="Omit individual reports and print patterns only.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def bugs_patterns(
    db_path: Path | None,
    days: int,
    limit: int | None,
    group_by_fingerprint: bool,
    output_format: str,
) -> None:
    """Group recent bug reports by fingerprint with suggested actions."""

    _emit(
        lambda: REPORT_CONTROLLER.bug_patterns(
            BugPatternsCommand(
                db_path=db_path,
                days=days,
                limit=limit,
                group_by_fingerprint=group_by_fingerprint,
                output_format=output_format.lower(),
            ),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    with _user_errors():
        lines = produce()
    _emit_lines(lines)


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except _USER_ERRORS as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        # Configuration errors from Settings.validate_for_scheduler.
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    research_reports()
