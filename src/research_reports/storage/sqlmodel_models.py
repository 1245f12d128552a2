"""SQLModel ORM tables for report job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class ResearchJob(SQLModel, table=True):
    __tablename__ = "research_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_research_jobs_status_queue", "status", "queued_at", "id"),
        Index("idx_research_jobs_scope_subject", "user_id", "normalized_subject"),
        Index("idx_research_jobs_scope_created", "user_id", "created_at"),
        Index(
            "uq_research_jobs_scope_subject_active",
            "user_id",
            "normalized_subject",
            unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(sa_column=Column(String, nullable=False, unique=True))
    user_id: str = DEFAULT_USER_ID
    subject_name: str
    normalized_subject: str
    geography: str
    industry: str | None = None
    report_type: str
    visibility_scope: str
    selected_sections_json: str = Field(sa_column=Column(Text, nullable=False))
    focus_areas_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str
    current_stage: str | None = None
    progress: float = 0.0
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    rerun_of_job_id: str | None = None
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResearchSubJob(SQLModel, table=True):
    __tablename__ = "research_subjobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "stage", name="uq_research_subjobs_job_stage"),
        Index("idx_research_subjobs_job_status", "job_id", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    subjob_id: str = Field(sa_column=Column(String, nullable=False, unique=True))
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("research_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    stage: str
    dependencies_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempts: int = 0
    max_attempts: int = 3
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResearchJobEvent(SQLModel, table=True):
    __tablename__ = "research_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_research_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("research_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    stage: str | None = None
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BugReport(SQLModel, table=True):
    """Permanent stage failure record.

    Job references are plain columns so reports outlive the job they describe.
    """

    __tablename__ = "bug_reports"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_bug_reports_fingerprint", "error_fingerprint"),
        Index("idx_bug_reports_status_time", "status", "created_at"),
        Index("idx_bug_reports_severity_time", "severity", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    bug_report_id: str = Field(sa_column=Column(String, nullable=False, unique=True))
    status: str = Field(default="open")
    severity: str
    category: str
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    error_message: str = Field(sa_column=Column(Text, nullable=False))
    error_stack: str | None = Field(default=None, sa_column=Column(Text))
    error_fingerprint: str
    job_id: str | None = None
    subjob_id: str | None = None
    stage: str
    subject_name: str
    report_type: str | None = None
    geography: str | None = None
    industry: str | None = None
    attempts: int
    max_attempts: int
    error_context_json: str | None = Field(default=None, sa_column=Column(Text))
    resolution_notes: str | None = Field(default=None, sa_column=Column(Text))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolved_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
