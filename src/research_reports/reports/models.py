"""Domain models for report jobs, stage subjobs and bug reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from research_reports.reports.stages import StageId


class JobStatus(str, Enum):
    """Persisted job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubJobStatus(str, Enum):
    """Persisted per-stage lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EffectiveStatus(str, Enum):
    """Status reported to readers, derived from the job row and its subjobs."""

    QUEUED = "queued"
    RUNNING = "running"
    RUNNING_WITH_ERRORS = "running_with_errors"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReportType(str, Enum):
    GENERIC = "GENERIC"
    INDUSTRIALS = "INDUSTRIALS"
    PE = "PE"
    FS = "FS"
    INSURANCE = "INSURANCE"


class VisibilityScope(str, Enum):
    PRIVATE = "PRIVATE"
    GROUP = "GROUP"
    FIRM = "FIRM"


class BugSeverity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"


class BugCategory(str, Enum):
    """Failure categories assigned by the message classifier."""

    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    PARSE_ERROR = "parse_error"
    CONTENT_ERROR = "content_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class BugStatus(str, Enum):
    """Triage workflow states."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    WONT_FIX = "wont_fix"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(slots=True)
class JobCreate:
    """Normalized input payload for persisting a new job.

    Stages listed in ``carried_outputs`` are created already completed with the
    given output; reruns use this to reuse results of a previous job.
    """

    subject_name: str
    normalized_subject: str
    geography: str
    report_type: ReportType
    stages: list[StageId]
    industry: str | None = None
    focus_areas: tuple[str, ...] = ()
    visibility_scope: VisibilityScope = VisibilityScope.PRIVATE
    max_attempts: int = 3
    job_id: str | None = None
    rerun_of_job_id: str | None = None
    carried_outputs: dict[StageId, dict[str, Any]] = field(default_factory=dict)


@dataclass(slots=True)
class JobView:
    """Readable job row for services, scheduler and CLI."""

    job_id: str
    user_id: str
    subject_name: str
    normalized_subject: str
    geography: str
    industry: str | None
    report_type: ReportType
    visibility_scope: VisibilityScope
    selected_sections: list[StageId]
    focus_areas: list[str]
    status: JobStatus
    current_stage: StageId | None
    progress: float
    error_summary: str | None
    rerun_of_job_id: str | None
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SubJobView:
    """One stage of one job."""

    subjob_id: str
    job_id: str
    stage: StageId
    dependencies: list[StageId]
    status: SubJobStatus
    attempts: int
    max_attempts: int
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None
    last_error: str | None
    output: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    stage: StageId | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its subjobs and event stream."""

    job: JobView
    subjobs: list[SubJobView]
    events: list[JobEventView]


@dataclass(slots=True)
class BugReportWrite:
    """Fully built bug report ready to persist."""

    severity: BugSeverity
    category: BugCategory
    title: str
    description: str
    error_message: str
    error_fingerprint: str
    stage: StageId
    subject_name: str
    attempts: int
    max_attempts: int
    error_stack: str | None = None
    job_id: str | None = None
    subjob_id: str | None = None
    report_type: str | None = None
    geography: str | None = None
    industry: str | None = None
    error_context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BugReportView:
    bug_report_id: str
    status: BugStatus
    severity: BugSeverity
    category: BugCategory
    title: str
    description: str
    error_message: str
    error_stack: str | None
    error_fingerprint: str
    job_id: str | None
    subjob_id: str | None
    stage: str
    subject_name: str
    report_type: str | None
    geography: str | None
    industry: str | None
    attempts: int
    max_attempts: int
    error_context: dict[str, Any]
    resolution_notes: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BugReportFilter:
    """Optional list filters for bug report triage."""

    status: BugStatus | None = None
    severity: BugSeverity | None = None
    category: BugCategory | None = None
    stage: str | None = None


@dataclass(slots=True)
class BugReportPage:
    items: list[BugReportView]
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass(slots=True)
class BugReportSummary:
    """Counters shown above the triage list."""

    total: int
    open_count: int
    critical_unresolved: int
    by_category: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class BugPattern:
    """Bug reports sharing one error fingerprint."""

    fingerprint: str
    count: int
    category: BugCategory
    stage: str
    severity: BugSeverity
    latest_error: str
    latest_at: datetime
    suggested_action: str


@dataclass(slots=True)
class BugPatternReport:
    """Machine-oriented digest of recent failures."""

    since: datetime
    total_bugs: int
    unique_patterns: int
    critical_count: int
    open_count: int
    patterns: list[BugPattern]
    bugs: list[BugReportView] | None
