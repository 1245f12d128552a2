"""Controllers for report CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from research_reports.config import Settings
from research_reports.reports.backend import EchoStageExecutor, StageExecutorRegistry
from research_reports.reports.bug_reports import BugReporter
from research_reports.reports.models import BugReportFilter, BugReportView
from research_reports.reports.repository import ReportRepository
from research_reports.reports.scheduler import ReportScheduler
from research_reports.reports.services import JobReport, ReportRequest, ReportService
from research_reports.reports.stages import (
    DEFAULT_SECTIONS,
    SECTION_NUMBERS,
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    expand_stages,
)
from research_reports.reports.triage import (
    parse_bug_category,
    parse_bug_severity,
    parse_bug_status,
)


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for report job creation."""

    db_path: Path | None
    subject_name: str
    geography: str | None
    industry: str | None
    report_type: str
    sections: tuple[str, ...]
    focus_areas: tuple[str, ...]
    visibility_scope: str
    force: bool
    wait: bool = False


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int
    offset: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobRerunCommand:
    db_path: Path | None
    job_id: str
    sections: tuple[str, ...]
    only_failed: bool
    wait: bool = False


@dataclass(slots=True)
class QueueDrainCommand:
    db_path: Path | None


@dataclass(slots=True)
class BugListCommand:
    """CLI input for bug report triage listing."""

    db_path: Path | None
    status: str | None
    severity: str | None
    category: str | None
    stage: str | None
    page: int
    limit: int


@dataclass(slots=True)
class BugCommand:
    db_path: Path | None
    bug_report_id: str


@dataclass(slots=True)
class BugUpdateCommand:
    db_path: Path | None
    bug_report_id: str
    status: str | None
    resolution_notes: str | None
    actor: str | None


@dataclass(slots=True)
class BugPatternsCommand:
    """CLI input for the failure pattern digest."""

    db_path: Path | None
    days: int
    limit: int | None
    group_by_fingerprint: bool
    output_format: str = "table"


class ReportCliController:
    """Coordinates job queue, scheduler and bug triage CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = _service(settings, repository)
            created = service.create_job(
                ReportRequest(
                    subject_name=command.subject_name,
                    geography=command.geography,
                    industry=command.industry,
                    report_type=command.report_type,
                    sections=command.sections,
                    focus_areas=command.focus_areas,
                    visibility_scope=command.visibility_scope,
                    force=command.force,
                ),
            )
            lines = [
                "Job enqueued: "
                f"job_id={created.job_id} subject={created.subject_name} "
                f"geography={created.geography} status={created.status.value} "
                f"queue_position={_or_dash(created.queue_position)}",
                f"Stages: {', '.join(stage.value for stage in created.stages)}",
            ]
            if command.wait:
                lines.extend(self._drain(settings, repository))
                lines.extend(_job_summary_lines(service.get_job(created.job_id)))
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            page = _service(settings, repository).list_jobs(
                status=command.status,
                limit=command.limit,
                offset=command.offset,
            )

        lines = [f"Jobs: {len(page.items)} of {page.total}"]
        for report in page.items:
            job = report.job
            lines.append(
                f"  {job.job_id} subject={job.subject_name} "
                f"status={report.effective_status.value} progress={job.progress:.0%} "
                f"generated={len(report.generated_stages)} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def show_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = _service(settings, repository)
            report = service.get_job(command.job_id)
            details = service.get_job_details(command.job_id)

        lines = _job_summary_lines(report)
        for subjob in report.subjobs:
            lines.append(
                f"  stage={subjob.stage.value} status={subjob.status.value} "
                f"attempts={subjob.attempts}/{subjob.max_attempts} "
                f"duration_ms={_or_dash(subjob.duration_ms)} "
                f"error={subjob.last_error or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"stage={event.stage.value if event.stage else '-'} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def cancel_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = _service(settings, repository).cancel_job(command.job_id)
        return [
            f"Job cancelled: {result.job_id} (cancelled stages={result.cancelled_subjobs})",
        ]

    def delete_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _service(settings, repository).delete_job(command.job_id)
        return [f"Job deleted: {command.job_id}"]

    def rerun_job(self, command: JobRerunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = _service(settings, repository)
            created = service.rerun_job(
                command.job_id,
                sections=command.sections,
                only_failed=command.only_failed,
            )
            lines = [
                f"Rerun enqueued: job_id={created.job_id} rerun_of={command.job_id} "
                f"queue_position={_or_dash(created.queue_position)}",
                f"Stages: {', '.join(stage.value for stage in created.stages)}",
            ]
            if command.wait:
                lines.extend(self._drain(settings, repository))
                lines.extend(_job_summary_lines(service.get_job(created.job_id)))
        return lines

    def queue_position(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            position = _service(settings, repository).get_queue_position(command.job_id)
        if position is None:
            return [f"Job {command.job_id} is not queued"]
        return [f"Job {command.job_id} queue_position={position}"]

    def drain_queue(self, command: QueueDrainCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            return self._drain(settings, repository)

    def list_stages(self) -> list[str]:
        lines = [f"Stages: {len(STAGE_ORDER)}"]
        for stage in STAGE_ORDER:
            dependencies = ", ".join(item.value for item in STAGE_DEPENDENCIES[stage]) or "-"
            section = SECTION_NUMBERS.get(stage)
            default = " default" if stage in DEFAULT_SECTIONS else ""
            lines.append(
                f"  {stage.value} section={_or_dash(section)} depends_on={dependencies}{default}",
            )
        return lines

    def expand_stages(self, sections: tuple[str, ...]) -> list[str]:
        expanded = expand_stages(sections)
        return [
            f"Expanded stages: {len(expanded)}",
            *(f"  {stage.value}" for stage in expanded),
        ]

    def list_bug_reports(self, command: BugListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        filters = BugReportFilter(
            status=parse_bug_status(command.status) if command.status else None,
            severity=parse_bug_severity(command.severity) if command.severity else None,
            category=parse_bug_category(command.category) if command.category else None,
            stage=command.stage,
        )
        with _repository(settings) as repository:
            page, summary = _service(settings, repository).list_bug_reports(
                filters=filters,
                page=command.page,
                limit=command.limit,
            )

        by_category = ", ".join(
            f"{category}={count}" for category, count in sorted(summary.by_category.items())
        )
        lines = [
            f"Bug reports: total={summary.total} open={summary.open_count} "
            f"critical_unresolved={summary.critical_unresolved}",
            f"Unresolved by category: {by_category or '-'}",
            f"Page {page.page}/{max(page.total_pages, 1)} ({page.total} matching)",
        ]
        for report in page.items:
            lines.append(
                f"  {report.bug_report_id} [{report.severity.value}] {report.status.value} "
                f"{report.title} fingerprint={report.error_fingerprint}",
            )
        return lines

    def show_bug_report(self, command: BugCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = _service(settings, repository).get_bug_report(command.bug_report_id)
        return _bug_report_lines(report)

    def update_bug_report(self, command: BugUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = _service(settings, repository).update_bug_report(
                command.bug_report_id,
                status=command.status,
                resolution_notes=command.resolution_notes,
                actor=command.actor,
            )
        return [
            f"Bug report updated: {report.bug_report_id} status={report.status.value} "
            f"resolved_by={report.resolved_by or '-'}",
        ]

    def delete_bug_report(self, command: BugCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _service(settings, repository).delete_bug_report(command.bug_report_id)
        return [f"Bug report deleted: {command.bug_report_id}"]

    def bug_patterns(self, command: BugPatternsCommand) -> list[str]:
        """Summarize recent failures grouped by fingerprint."""

        settings = Settings.from_env(db_path=command.db_path)
        since = datetime.now(tz=UTC) - timedelta(days=max(1, command.days))
        with _repository(settings) as repository:
            report = _service(settings, repository).query_bug_patterns(
                since=since,
                limit=command.limit,
                group_by_fingerprint=command.group_by_fingerprint,
            )

        if command.output_format == "json":
            payload: dict[str, object] = {
                "meta": {
                    "since": report.since.isoformat(),
                    "totalBugs": report.total_bugs,
                    "uniquePatterns": report.unique_patterns,
                    "criticalCount": report.critical_count,
                    "openCount": report.open_count,
                },
                "patterns": [
                    {
                        "fingerprint": pattern.fingerprint,
                        "count": pattern.count,
                        "category": pattern.category.value,
                        "stage": pattern.stage,
                        "severity": pattern.severity.value,
                        "latestError": pattern.latest_error,
                        "latestAt": pattern.latest_at.isoformat(),
                        "suggestedAction": pattern.suggested_action,
                    }
                    for pattern in report.patterns
                ],
            }
            if report.bugs is not None:
                payload["bugs"] = [
                    {
                        "id": bug.bug_report_id,
                        "status": bug.status.value,
                        "severity": bug.severity.value,
                        "category": bug.category.value,
                        "stage": bug.stage,
                        "jobId": bug.job_id,
                        "fingerprint": bug.error_fingerprint,
                        "errorMessage": bug.error_message[:300],
                        "createdAt": bug.created_at.isoformat(),
                    }
                    for bug in report.bugs
                ]
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        lines = [
            f"Bug patterns since {report.since.isoformat()}: total={report.total_bugs} "
            f"unique={report.unique_patterns} critical={report.critical_count} "
            f"open={report.open_count}",
        ]
        for pattern in report.patterns:
            lines.append(
                f"  {pattern.fingerprint} x{pattern.count} stage={pattern.stage} "
                f"category={pattern.category.value} severity={pattern.severity.value}",
            )
            lines.append(f"    latest: {pattern.latest_error}")
            lines.append(f"    action: {pattern.suggested_action}")
        return lines

    def _drain(self, settings: Settings, repository: ReportRepository) -> list[str]:
        settings.validate_for_scheduler()
        scheduler = _scheduler(settings, repository)
        requeued = (
            repository.requeue_interrupted_jobs() if settings.scheduler.recover_on_start else 0
        )
        processed = scheduler.process_queue()
        scheduler.bug_reporter.wait_idle(timeout=30)
        return [f"Queue drained: processed={processed} requeued={requeued}"]


def _service(settings: Settings, repository: ReportRepository) -> ReportService:
    return ReportService(
        repository=repository,
        max_attempts=settings.scheduler.max_attempts,
    )


def _scheduler(settings: Settings, repository: ReportRepository) -> ReportScheduler:
    executor = EchoStageExecutor(
        delay_seconds=settings.demo_executor.stage_seconds,
        fail_stages=settings.demo_executor.fail_stages,
    )
    return ReportScheduler(
        repository=repository,
        executors=StageExecutorRegistry(executor),
        bug_reporter=BugReporter(sink=repository),
        settings=settings.scheduler,
    )


def _job_summary_lines(report: JobReport) -> list[str]:
    job = report.job
    return [
        f"Job: {job.job_id}",
        f"Subject: {job.subject_name} ({job.geography})",
        f"Report type: {job.report_type.value}",
        f"Status: {report.effective_status.value} (stored={job.status.value})",
        f"Progress: {job.progress:.0%} current_stage="
        f"{job.current_stage.value if job.current_stage else '-'}",
        f"Generated stages: {', '.join(report.generated_stages) or '-'}",
        f"Generated sections: {', '.join(str(item) for item in report.generated_sections) or '-'}",
        f"Queue position: {_or_dash(report.queue_position)}",
        f"Error: {job.error_summary or '-'}",
    ]


def _bug_report_lines(report: BugReportView) -> list[str]:
    lines = [
        f"Bug report: {report.bug_report_id}",
        f"Title: {report.title}",
        f"Status: {report.status.value} severity={report.severity.value} "
        f"category={report.category.value}",
        f"Stage: {report.stage} attempts={report.attempts}/{report.max_attempts}",
        f"Job: {report.job_id or '-'} subject={report.subject_name}",
        f"Fingerprint: {report.error_fingerprint}",
        f"Error: {report.error_message}",
    ]
    if report.error_context:
        lines.append(f"Context: {json.dumps(report.error_context, ensure_ascii=False)}")
    if report.resolved_at is not None:
        lines.append(
            f"Resolved: {report.resolved_at.isoformat()} by {report.resolved_by or '-'}",
        )
    if report.resolution_notes:
        lines.append(f"Notes: {report.resolution_notes}")
    return lines


def _or_dash(value: object | None) -> str:
    return "-" if value is None else str(value)


@contextmanager
def _repository(settings: Settings) -> Iterator[ReportRepository]:
    repository = ReportRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
