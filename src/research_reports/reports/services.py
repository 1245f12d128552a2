"""Use-case services for report jobs and bug report triage."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from research_reports.errors import (
    BugReportNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    ReportRequestError,
)
from research_reports.reports.models import (
    BugPatternReport,
    BugReportFilter,
    BugReportPage,
    BugReportSummary,
    BugReportView,
    EffectiveStatus,
    JobCreate,
    JobDetails,
    JobStatus,
    JobView,
    ReportType,
    SubJobStatus,
    SubJobView,
    VisibilityScope,
)
from research_reports.reports.repository import ReportRepository
from research_reports.reports.scheduler import ReportScheduler
from research_reports.reports.stages import (
    StageId,
    build_completed_stages,
    compute_rerun_stages,
    expand_stages,
    generated_section_numbers,
    parse_stage,
)
from research_reports.reports.status import (
    derive_job_status,
    filter_jobs_by_derived_status,
    is_active,
)
from research_reports.reports.triage import (
    DEFAULT_PATTERN_WINDOW_DAYS,
    build_pattern_report,
    clamp_pattern_limit,
    parse_bug_status,
)
from research_reports.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_GEOGRAPHY = "Global"
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100
# Page size used while scanning every job for a derived status filter.
STATUS_FILTER_BATCH_SIZE = 500

_WHITESPACE_RE = re.compile(r"\s+")
_SURROUNDING_QUOTES_RE = re.compile(r'^"+|"+$')
_MEANINGFUL_RE = re.compile(r"[A-Za-z0-9]")


def normalize_input(value: str | None) -> str:
    """Trim, collapse whitespace and strip surrounding double quotes."""

    if not value:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", value.strip())
    return _SURROUNDING_QUOTES_RE.sub("", collapsed)


def to_title_like(value: str) -> str:
    """Upper-case the first letter of each word, leaving the rest untouched."""

    return " ".join(part[:1].upper() + part[1:] for part in value.split(" "))


def has_meaningful_chars(value: str) -> bool:
    return _MEANINGFUL_RE.search(value) is not None


def normalize_subject_key(subject_name: str) -> str:
    """Key used to detect duplicate jobs for the same subject."""

    return normalize_input(subject_name).casefold()


def parse_report_type(value: str | ReportType) -> ReportType:
    if isinstance(value, ReportType):
        return value
    try:
        return ReportType(value.strip().upper())
    except ValueError as error:
        allowed = ", ".join(item.value for item in ReportType)
        raise ReportRequestError(f"Invalid reportType. Must be one of: {allowed}") from error


def parse_visibility_scope(value: str | VisibilityScope) -> VisibilityScope:
    if isinstance(value, VisibilityScope):
        return value
    try:
        return VisibilityScope(value.strip().upper())
    except ValueError as error:
        allowed = ", ".join(item.value for item in VisibilityScope)
        raise ReportRequestError(f"Invalid visibilityScope. Must be one of: {allowed}") from error


def parse_effective_status(value: str | EffectiveStatus) -> EffectiveStatus:
    if isinstance(value, EffectiveStatus):
        return value
    try:
        return EffectiveStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in EffectiveStatus)
        raise ReportRequestError(f"Invalid status filter. Must be one of: {allowed}") from error


@dataclass(slots=True)
class ReportRequest:
    """Raw user request for a new report."""

    subject_name: str
    geography: str | None = None
    industry: str | None = None
    report_type: str | ReportType = ReportType.GENERIC
    sections: Sequence[str] = ()
    focus_areas: Sequence[str] = ()
    visibility_scope: str | VisibilityScope = VisibilityScope.PRIVATE
    force: bool = False


@dataclass(slots=True)
class JobCreated:
    job_id: str
    status: JobStatus
    queue_position: int | None
    subject_name: str
    geography: str
    stages: list[StageId]
    message: str


@dataclass(slots=True)
class CancelResult:
    job_id: str
    status: JobStatus
    cancelled_subjobs: int


@dataclass(slots=True)
class JobReport:
    """Job annotated with what readers need to render it."""

    job: JobView
    effective_status: EffectiveStatus
    subjobs: list[SubJobView]
    generated_stages: list[str]
    generated_sections: list[int]
    queue_position: int | None = None


@dataclass(slots=True)
class JobPage:
    items: list[JobReport]
    total: int
    limit: int
    offset: int


@dataclass(slots=True)
class _NormalizedRequest:
    subject_name: str
    normalized_subject: str
    geography: str
    industry: str | None
    report_type: ReportType
    visibility_scope: VisibilityScope
    focus_areas: tuple[str, ...] = ()
    stages: list[StageId] = field(default_factory=list)


class ReportService:
    """Request boundary: validation, duplicate guard, persistence and queue nudges."""

    def __init__(
        self,
        *,
        repository: ReportRepository,
        scheduler: ReportScheduler | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.scheduler = scheduler
        self.max_attempts = max_attempts

    def create_job(self, request: ReportRequest) -> JobCreated:
        """Validate, persist and enqueue a new report job."""

        normalized = _normalize_request(request)
        normalized.stages = expand_stages(request.sections)
        return self._submit(normalized, force=request.force)

    def rerun_job(
        self,
        job_id: str,
        *,
        sections: Sequence[str] = (),
        only_failed: bool = False,
    ) -> JobCreated:
        """Create a fresh job from a previous job's inputs.

        With ``only_failed`` (or explicit ``sections``) the stages that
        completed last time and are not being rerun are carried over with
        their outputs. The previous job is never modified.
        """

        details = self.repository.get_job_details(job_id)
        if details is None:
            raise JobNotFoundError(job_id)
        previous = details.job
        completed_outputs = {
            subjob.stage: subjob.output or {}
            for subjob in details.subjobs
            if subjob.status is SubJobStatus.COMPLETED
        }

        carried: dict[StageId, dict] = {}
        if only_failed or sections:
            if only_failed:
                requested = [
                    subjob.stage.value
                    for subjob in details.subjobs
                    if subjob.status is not SubJobStatus.COMPLETED
                ]
                if not requested:
                    raise ReportRequestError(f"Job {job_id} has no failed stages to rerun")
            else:
                requested = [parse_stage(stage).value for stage in sections]
            rerun = compute_rerun_stages(requested, details.subjobs)
            stages = expand_stages(rerun)
            carried = {
                stage: completed_outputs[stage]
                for stage in stages
                if stage not in rerun and stage in completed_outputs
            }
        else:
            stages = expand_stages(previous.selected_sections)

        normalized = _NormalizedRequest(
            subject_name=previous.subject_name,
            normalized_subject=previous.normalized_subject,
            geography=previous.geography,
            industry=previous.industry,
            report_type=previous.report_type,
            visibility_scope=previous.visibility_scope,
            focus_areas=tuple(previous.focus_areas),
            stages=stages,
        )
        return self._submit(
            normalized,
            force=True,
            rerun_of_job_id=previous.job_id,
            carried_outputs=carried,
        )

    def cancel_job(self, job_id: str) -> CancelResult:
        cancelled = self.repository.cancel_job(job_id)
        logger.info("Job %s cancelled (%d open stages)", job_id, cancelled)
        self._trigger()
        return CancelResult(
            job_id=job_id,
            status=JobStatus.CANCELLED,
            cancelled_subjobs=cancelled,
        )

    def delete_job(self, job_id: str) -> None:
        if not self.repository.delete_job(job_id):
            raise JobNotFoundError(job_id)
        logger.info("Job %s deleted", job_id)
        self._trigger()

    def get_job(self, job_id: str) -> JobReport:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return self._report(job, self.repository.list_subjobs(job_id))

    def get_job_details(self, job_id: str) -> JobDetails:
        details = self.repository.get_job_details(job_id)
        if details is None:
            raise JobNotFoundError(job_id)
        return details

    def get_queue_position(self, job_id: str) -> int | None:
        if self.repository.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        return self.repository.get_queue_position(job_id)

    def list_jobs(
        self,
        *,
        status: str | EffectiveStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> JobPage:
        """Current user's jobs, newest first, optionally filtered by derived status."""

        limit = min(MAX_LIST_LIMIT, max(1, limit))
        offset = max(0, offset)
        wanted = parse_effective_status(status) if status else None

        if wanted is None:
            jobs = self.repository.list_jobs(limit=limit, offset=offset)
            subjobs = self.repository.list_subjobs_for_jobs([job.job_id for job in jobs])
            total = self.repository.count_jobs()
        else:
            matching: list[JobView] = []
            subjobs = {}
            scan_offset = 0
            while True:
                batch = self.repository.list_jobs(
                    limit=STATUS_FILTER_BATCH_SIZE,
                    offset=scan_offset,
                )
                batch_subjobs = self.repository.list_subjobs_for_jobs(
                    [job.job_id for job in batch],
                )
                hits = filter_jobs_by_derived_status(
                    [(job, job.status, batch_subjobs[job.job_id]) for job in batch],
                    wanted,
                )
                matching.extend(hits)
                subjobs.update((job.job_id, batch_subjobs[job.job_id]) for job in hits)
                if len(batch) < STATUS_FILTER_BATCH_SIZE:
                    break
                scan_offset += STATUS_FILTER_BATCH_SIZE
            total = len(matching)
            jobs = matching[offset : offset + limit]

        return JobPage(
            items=[self._report(job, subjobs[job.job_id]) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
        )

    def get_bug_report(self, bug_report_id: str) -> BugReportView:
        report = self.repository.get_bug_report(bug_report_id)
        if report is None:
            raise BugReportNotFoundError(bug_report_id)
        return report

    def list_bug_reports(
        self,
        *,
        filters: BugReportFilter | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[BugReportPage, BugReportSummary]:
        """Filtered page plus the unfiltered summary counters."""

        return (
            self.repository.list_bug_reports(filters=filters, page=page, limit=limit),
            self.repository.bug_report_summary(),
        )

    def update_bug_report(
        self,
        bug_report_id: str,
        *,
        status: str | None = None,
        resolution_notes: str | None = None,
        actor: str | None = None,
    ) -> BugReportView:
        return self.repository.update_bug_report(
            bug_report_id,
            status=parse_bug_status(status) if status is not None else None,
            resolution_notes=resolution_notes,
            actor=actor,
        )

    def delete_bug_report(self, bug_report_id: str) -> None:
        if not self.repository.delete_bug_report(bug_report_id):
            raise BugReportNotFoundError(bug_report_id)

    def query_bug_patterns(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        group_by_fingerprint: bool = False,
    ) -> BugPatternReport:
        """Recent failures grouped by fingerprint for automated triage."""

        since = since or utc_now() - timedelta(days=DEFAULT_PATTERN_WINDOW_DAYS)
        bugs = self.repository.list_bug_reports_since(
            since=since,
            limit=clamp_pattern_limit(limit),
        )
        return build_pattern_report(
            bugs=bugs,
            since=since,
            include_bugs=not group_by_fingerprint,
        )

    def _submit(
        self,
        normalized: _NormalizedRequest,
        *,
        force: bool,
        rerun_of_job_id: str | None = None,
        carried_outputs: dict[StageId, dict] | None = None,
    ) -> JobCreated:
        self._guard_duplicates(normalized, force=force)
        job = self.repository.create_job(
            JobCreate(
                subject_name=normalized.subject_name,
                normalized_subject=normalized.normalized_subject,
                geography=normalized.geography,
                report_type=normalized.report_type,
                stages=normalized.stages,
                industry=normalized.industry,
                focus_areas=normalized.focus_areas,
                visibility_scope=normalized.visibility_scope,
                max_attempts=self.max_attempts,
                rerun_of_job_id=rerun_of_job_id,
                carried_outputs=carried_outputs or {},
            ),
        )
        queue_position = self.repository.get_queue_position(job.job_id)
        logger.info(
            "Job %s queued: subject=%r stages=%d position=%s",
            job.job_id,
            job.subject_name,
            len(normalized.stages),
            queue_position,
        )
        self._trigger()
        return JobCreated(
            job_id=job.job_id,
            status=job.status,
            queue_position=queue_position,
            subject_name=job.subject_name,
            geography=job.geography,
            stages=normalized.stages,
            message=f"Research job created. Generating {len(normalized.stages)} stages.",
        )

    def _guard_duplicates(self, normalized: _NormalizedRequest, *, force: bool) -> None:
        existing = self.repository.find_jobs_for_subject(normalized.normalized_subject)
        if not existing:
            return
        subjobs = self.repository.list_subjobs_for_jobs([job.job_id for job in existing])
        statuses = [
            (job, derive_job_status(job.status, subjobs[job.job_id])) for job in existing
        ]

        for job, effective in statuses:
            if is_active(effective):
                raise DuplicateJobError.active(
                    normalized.subject_name,
                    job_id=job.job_id,
                    status=effective.value,
                )

        if force:
            return
        for job, effective in statuses:
            if effective is EffectiveStatus.CANCELLED:
                continue
            raise DuplicateJobError(
                f"A report for {normalized.subject_name} already exists "
                f"(job_id={job.job_id}, status={effective.value}). Use force to regenerate.",
                job_id=job.job_id,
                status=effective.value,
            )

    def _report(self, job: JobView, subjobs: list[SubJobView]) -> JobReport:
        order = [stage.value for stage in job.selected_sections]
        return JobReport(
            job=job,
            effective_status=derive_job_status(job.status, subjobs),
            subjobs=subjobs,
            generated_stages=build_completed_stages(subjobs, order),
            generated_sections=generated_section_numbers(subjobs),
            queue_position=self.repository.get_queue_position(job.job_id)
            if job.status is JobStatus.QUEUED
            else None,
        )

    def _trigger(self) -> None:
        if self.scheduler is not None:
            self.scheduler.trigger()


def _normalize_request(request: ReportRequest) -> _NormalizedRequest:
    subject = normalize_input(request.subject_name)
    if len(subject) < 2 or not has_meaningful_chars(subject):
        raise ReportRequestError(
            "Missing or invalid companyName. Please provide a valid company name.",
        )
    geography = normalize_input(request.geography or DEFAULT_GEOGRAPHY)
    industry = normalize_input(request.industry)

    focus_areas: list[str] = []
    for item in request.focus_areas:
        value = normalize_input(item)
        if value and value not in focus_areas:
            focus_areas.append(value)

    return _NormalizedRequest(
        subject_name=to_title_like(subject),
        normalized_subject=normalize_subject_key(subject),
        geography=to_title_like(geography) if has_meaningful_chars(geography) else DEFAULT_GEOGRAPHY,
        industry=to_title_like(industry) if industry and has_meaningful_chars(industry) else None,
        report_type=parse_report_type(request.report_type),
        visibility_scope=parse_visibility_scope(request.visibility_scope),
        focus_areas=tuple(focus_areas),
    )
