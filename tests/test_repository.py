from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from research_reports.errors import (
    BugReportNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
)
from research_reports.reports.bug_reports import StageFailure, build_bug_report
from research_reports.reports.models import (
    BugCategory,
    BugReportFilter,
    BugSeverity,
    BugStatus,
    JobCreate,
    JobStatus,
    ReportType,
    SubJobStatus,
)
from research_reports.reports.repository import ReportRepository
from research_reports.reports.stages import StageId, expand_stages
from research_reports.storage.common import utc_now

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("Job Store"),
]


def _create(repository: ReportRepository, subject: str = "Acme Corp", sections=("exec_summary",)):
    return repository.create_job(
        JobCreate(
            subject_name=subject,
            normalized_subject=subject.casefold(),
            geography="Global",
            report_type=ReportType.GENERIC,
            stages=expand_stages(sections),
        ),
    )


def _bug(stage: StageId, error: str, *, job_id: str | None = None):
    return build_bug_report(
        StageFailure(
            stage=stage,
            error=error,
            subject_name="Acme Corp",
            attempts=3,
            max_attempts=3,
            job_id=job_id,
        ),
    )


def test_create_job_persists_expanded_subjobs(repository: ReportRepository):
    job = _create(repository)

    assert job.status is JobStatus.QUEUED
    assert job.selected_sections == [
        StageId.FOUNDATION,
        StageId.FINANCIAL_SNAPSHOT,
        StageId.COMPANY_OVERVIEW,
        StageId.EXEC_SUMMARY,
    ]
    subjobs = repository.list_subjobs(job.job_id)
    assert [subjob.stage for subjob in subjobs] == job.selected_sections
    assert all(subjob.status is SubJobStatus.PENDING for subjob in subjobs)
    exec_summary = subjobs[-1]
    assert exec_summary.dependencies == [
        StageId.FOUNDATION,
        StageId.FINANCIAL_SNAPSHOT,
        StageId.COMPANY_OVERVIEW,
    ]
    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]


def test_carried_outputs_create_completed_subjobs(repository: ReportRepository):
    job = repository.create_job(
        JobCreate(
            subject_name="Acme Corp",
            normalized_subject="acme corp",
            geography="Global",
            report_type=ReportType.PE,
            stages=expand_stages(["trends"]),
            carried_outputs={StageId.FOUNDATION: {"facts": ["a"]}},
        ),
    )
    by_stage = {subjob.stage: subjob for subjob in repository.list_subjobs(job.job_id)}
    assert by_stage[StageId.FOUNDATION].status is SubJobStatus.COMPLETED
    assert by_stage[StageId.FOUNDATION].output == {"facts": ["a"]}
    assert by_stage[StageId.TRENDS].status is SubJobStatus.PENDING


def test_claim_is_fifo_and_single_running(repository: ReportRepository):
    first = _create(repository, "Alpha")
    second = _create(repository, "Beta")

    assert repository.get_queue_position(first.job_id) == 0
    assert repository.get_queue_position(second.job_id) == 1

    claimed = repository.claim_next_queued_job()
    assert claimed is not None
    assert claimed.job_id == first.job_id
    assert claimed.status is JobStatus.RUNNING
    assert repository.claim_next_queued_job() is None
    assert repository.get_queue_position(first.job_id) is None
    assert repository.get_queue_position(second.job_id) == 1

    assert repository.finish_job(job_id=first.job_id, status=JobStatus.COMPLETED, progress=1.0)
    claimed = repository.claim_next_queued_job()
    assert claimed is not None
    assert claimed.job_id == second.job_id


def test_one_active_job_per_subject_and_user(db_path, repository: ReportRepository):
    first = _create(repository)

    with pytest.raises(DuplicateJobError, match="already exists in the queue") as queued:
        _create(repository, sections=("trends",))
    assert queued.value.job_id == first.job_id
    assert queued.value.status == "queued"

    repository.claim_next_queued_job()
    with pytest.raises(DuplicateJobError, match="already running") as running:
        _create(repository)
    assert running.value.status == "running"
    assert repository.count_jobs() == 1

    other = ReportRepository(db_path=db_path, user_id="someone_else")
    try:
        assert _create(other).job_id != first.job_id
    finally:
        other.close()

    repository.finish_job(job_id=first.job_id, status=JobStatus.COMPLETED, progress=1.0)
    assert _create(repository).status is JobStatus.QUEUED


def test_subjob_transitions_require_expected_status(repository: ReportRepository):
    job = _create(repository, sections=("trends",))
    root = repository.list_subjobs(job.job_id)[0]

    # Parent job is still queued.
    assert not repository.start_subjob(subjob_id=root.subjob_id)
    repository.claim_next_queued_job()
    assert repository.start_subjob(subjob_id=root.subjob_id)
    assert not repository.start_subjob(subjob_id=root.subjob_id)

    assert repository.retry_subjob(subjob_id=root.subjob_id, error="503", duration_ms=5)
    refreshed = repository.list_subjobs(job.job_id)[0]
    assert refreshed.status is SubJobStatus.PENDING
    assert refreshed.attempts == 1
    assert refreshed.last_error == "503"

    assert repository.start_subjob(subjob_id=root.subjob_id)
    assert repository.complete_subjob(
        subjob_id=root.subjob_id,
        output={"ok": True},
        duration_ms=12,
    )
    assert not repository.complete_subjob(subjob_id=root.subjob_id, output={}, duration_ms=1)
    refreshed = repository.list_subjobs(job.job_id)[0]
    assert refreshed.status is SubJobStatus.COMPLETED
    assert refreshed.output == {"ok": True}
    assert refreshed.duration_ms == 12


def test_cancel_job_cancels_open_subjobs_and_blocks_late_completion(
    repository: ReportRepository,
):
    job = _create(repository, sections=("trends",))
    repository.claim_next_queued_job()
    root = repository.list_subjobs(job.job_id)[0]
    assert repository.start_subjob(subjob_id=root.subjob_id)

    assert repository.cancel_job(job.job_id) == 2
    assert repository.get_job_status(job.job_id) is JobStatus.CANCELLED
    assert not repository.complete_subjob(subjob_id=root.subjob_id, output={}, duration_ms=1)
    assert not repository.finish_job(job_id=job.job_id, status=JobStatus.COMPLETED, progress=1.0)
    assert {subjob.status for subjob in repository.list_subjobs(job.job_id)} == {
        SubJobStatus.CANCELLED,
    }

    with pytest.raises(JobStateError, match="already cancelled"):
        repository.cancel_job(job.job_id)
    with pytest.raises(JobNotFoundError):
        repository.cancel_job("missing")


def test_cancel_rejects_completed_job(repository: ReportRepository):
    job = _create(repository)
    repository.claim_next_queued_job()
    repository.finish_job(job_id=job.job_id, status=JobStatus.COMPLETED, progress=1.0)
    with pytest.raises(JobStateError, match="already completed"):
        repository.cancel_job(job.job_id)


def test_delete_job_cascades_but_keeps_bug_reports(repository: ReportRepository):
    job = _create(repository)
    repository.add_bug_report(_bug(StageId.TRENDS, "boom", job_id=job.job_id))

    assert repository.delete_job(job.job_id)
    assert not repository.delete_job(job.job_id)
    assert repository.get_job(job.job_id) is None
    assert repository.list_subjobs(job.job_id) == []
    assert repository.list_bug_reports().total == 1


def test_requeue_interrupted_jobs(repository: ReportRepository):
    job = _create(repository, sections=("trends",))
    repository.claim_next_queued_job()
    root = repository.list_subjobs(job.job_id)[0]
    repository.start_subjob(subjob_id=root.subjob_id)

    assert repository.requeue_interrupted_jobs() == 1
    assert repository.get_job_status(job.job_id) is JobStatus.QUEUED
    assert repository.list_subjobs(job.job_id)[0].status is SubJobStatus.PENDING
    assert repository.requeue_interrupted_jobs() == 0


def test_jobs_are_scoped_to_user(db_path, repository: ReportRepository):
    _create(repository, "Alpha")
    other = ReportRepository(db_path=db_path, user_id="someone_else")
    try:
        assert other.list_jobs() == []
        assert other.count_jobs() == 0
        assert other.find_jobs_for_subject("alpha") == []
    finally:
        other.close()
    assert repository.count_jobs() == 1
    assert [job.subject_name for job in repository.find_jobs_for_subject("alpha")] == ["Alpha"]


def test_bug_report_list_filters_and_summary(repository: ReportRepository):
    critical = repository.add_bug_report(_bug(StageId.FOUNDATION, "HTTP 429"))
    repository.add_bug_report(_bug(StageId.TRENDS, "invalid json"))
    resolved = repository.add_bug_report(_bug(StageId.APPENDIX, "invalid json"))
    repository.update_bug_report(resolved.bug_report_id, status=BugStatus.RESOLVED, actor="ops")

    page = repository.list_bug_reports(
        filters=BugReportFilter(category=BugCategory.PARSE_ERROR),
        page=1,
        limit=1,
    )
    assert page.total == 2
    assert page.total_pages == 2
    assert len(page.items) == 1

    only_critical = repository.list_bug_reports(
        filters=BugReportFilter(severity=BugSeverity.CRITICAL),
    )
    assert [item.bug_report_id for item in only_critical.items] == [critical.bug_report_id]

    summary = repository.bug_report_summary()
    assert summary.total == 3
    assert summary.open_count == 2
    assert summary.critical_unresolved == 1
    assert summary.by_category == {"parse_error": 1, "rate_limit": 1}


def test_bug_report_update_and_delete(repository: ReportRepository):
    report = repository.add_bug_report(_bug(StageId.TRENDS, "boom"))

    resolved = repository.update_bug_report(
        report.bug_report_id,
        status=BugStatus.RESOLVED,
        resolution_notes="fixed prompt",
    )
    assert resolved.resolved_by == "admin"
    assert resolved.resolved_at is not None
    assert resolved.resolution_notes == "fixed prompt"

    reopened = repository.update_bug_report(report.bug_report_id, status=BugStatus.OPEN)
    assert reopened.resolved_at is None
    assert reopened.resolved_by is None

    with pytest.raises(BugReportNotFoundError):
        repository.update_bug_report("missing", status=BugStatus.OPEN)
    assert repository.delete_bug_report(report.bug_report_id)
    assert repository.get_bug_report(report.bug_report_id) is None


def test_list_bug_reports_since_is_newest_first(repository: ReportRepository):
    first = repository.add_bug_report(_bug(StageId.TRENDS, "first"))
    second = repository.add_bug_report(_bug(StageId.TRENDS, "second"))

    recent = repository.list_bug_reports_since(since=utc_now() - timedelta(days=1), limit=10)
    assert [item.bug_report_id for item in recent] == [second.bug_report_id, first.bug_report_id]
    assert repository.list_bug_reports_since(since=utc_now() + timedelta(days=1), limit=10) == []


def test_close_open_subjobs_settles_stages_of_finished_job(repository: ReportRepository):
    job = _create(repository, sections=("trends",))
    repository.claim_next_queued_job()
    root = repository.list_subjobs(job.job_id)[0]
    assert repository.start_subjob(subjob_id=root.subjob_id)

    # Still running: nothing to settle yet.
    assert repository.close_open_subjobs(job.job_id, reason="database is locked") == 0

    assert repository.finish_job(job_id=job.job_id, status=JobStatus.FAILED, progress=0.0)
    assert repository.close_open_subjobs(job.job_id, reason="database is locked") == 2

    by_stage = {subjob.stage: subjob for subjob in repository.list_subjobs(job.job_id)}
    assert by_stage[StageId.FOUNDATION].status is SubJobStatus.FAILED
    assert by_stage[StageId.FOUNDATION].last_error == "database is locked"
    assert by_stage[StageId.FOUNDATION].completed_at is not None
    assert by_stage[StageId.TRENDS].status is SubJobStatus.CANCELLED
    assert by_stage[StageId.TRENDS].last_error is None
    assert repository.close_open_subjobs(job.job_id, reason="again") == 0
    assert repository.close_open_subjobs("missing", reason="gone") == 0
