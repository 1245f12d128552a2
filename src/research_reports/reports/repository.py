"""Persistent job store for report jobs, stage subjobs and bug reports."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from research_reports.errors import (
    BugReportNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
)
from research_reports.reports.models import (
    TERMINAL_JOB_STATUSES,
    BugCategory,
    BugReportFilter,
    BugReportPage,
    BugReportSummary,
    BugReportView,
    BugReportWrite,
    BugSeverity,
    BugStatus,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    ReportType,
    SubJobStatus,
    SubJobView,
    VisibilityScope,
)
from research_reports.reports.stages import STAGE_DEPENDENCIES, StageId, order_stages
from research_reports.reports.triage import plan_bug_report_update
from research_reports.storage.alembic_runner import upgrade_head
from research_reports.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    load_json_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from research_reports.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    BugReport,
    ResearchJob,
    ResearchJobEvent,
    ResearchSubJob,
)

_OPEN_SUBJOB_VALUES = (SubJobStatus.PENDING.value, SubJobStatus.RUNNING.value)
# Statuses covered by the single-active-job-per-subject unique index.
_ACTIVE_JOB_VALUES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class ReportRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every mutation issued by the scheduler is a conditional update on the
    expected prior status and returns ``False`` when the row moved on (or was
    deleted) in the meantime.
    """

    def __init__(
        self,
        db_path,
        *,
        user_id: str = DEFAULT_USER_ID,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs -------------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Persist a queued job and one pending subjob per stage in one transaction."""

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        stages = order_stages(payload.stages)
        with Session(self.engine) as session:
            row = ResearchJob(
                job_id=job_id,
                user_id=self.user_id,
                subject_name=payload.subject_name,
                normalized_subject=payload.normalized_subject,
                geography=payload.geography,
                industry=payload.industry,
                report_type=ReportType(payload.report_type).value,
                visibility_scope=VisibilityScope(payload.visibility_scope).value,
                selected_sections_json=dump_json([stage.value for stage in stages]),
                focus_areas_json=dump_json(list(payload.focus_areas))
                if payload.focus_areas
                else None,
                status=JobStatus.QUEUED.value,
                current_stage=None,
                progress=0.0,
                rerun_of_job_id=payload.rerun_of_job_id,
                queued_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            carried = {StageId(stage): output for stage, output in payload.carried_outputs.items()}
            for stage in stages:
                dependencies = [
                    dependency.value
                    for dependency in STAGE_DEPENDENCIES[stage]
                    if dependency in stages
                ]
                is_carried = stage in carried
                session.add(
                    ResearchSubJob(
                        subjob_id=str(uuid4()),
                        job_id=job_id,
                        stage=stage.value,
                        dependencies_json=dump_json(dependencies),
                        status=SubJobStatus.COMPLETED.value
                        if is_carried
                        else SubJobStatus.PENDING.value,
                        attempts=0,
                        max_attempts=payload.max_attempts,
                        completed_at=now if is_carried else None,
                        output_json=dump_json(carried[stage]) if is_carried else None,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED.value,
                details={
                    "stages": [stage.value for stage in stages],
                    "carried_stages": sorted(stage.value for stage in carried),
                    "max_attempts": payload.max_attempts,
                    "rerun_of_job_id": payload.rerun_of_job_id,
                },
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                active = session.exec(
                    select(ResearchJob).where(
                        ResearchJob.user_id == self.user_id,
                        ResearchJob.normalized_subject == payload.normalized_subject,
                        col(ResearchJob.status).in_(_ACTIVE_JOB_VALUES),
                    ),
                ).first()
                if active is None:
                    raise
                raise DuplicateJobError.active(
                    active.subject_name,
                    job_id=active.job_id,
                    status=active.status,
                ) from error
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = _job_row(session, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_status(self, job_id: str) -> JobStatus | None:
        """Cheap status lookup used by the scheduler's cancellation poll."""

        with Session(self.engine) as session:
            value = session.exec(
                select(ResearchJob.status).where(ResearchJob.job_id == job_id),
            ).one_or_none()
        return JobStatus(value) if value is not None else None

    def list_subjobs(self, job_id: str) -> list[SubJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchSubJob)
                .where(ResearchSubJob.job_id == job_id)
                .order_by(col(ResearchSubJob.id).asc()),
            ).all()
        return [_to_subjob_view(row) for row in rows]

    def list_subjobs_for_jobs(self, job_ids: Sequence[str]) -> dict[str, list[SubJobView]]:
        grouped: dict[str, list[SubJobView]] = {job_id: [] for job_id in job_ids}
        if not job_ids:
            return grouped
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchSubJob)
                .where(col(ResearchSubJob.job_id).in_(list(job_ids)))
                .order_by(col(ResearchSubJob.id).asc()),
            ).all()
        for row in rows:
            grouped[row.job_id].append(_to_subjob_view(row))
        return grouped

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with subjobs and event stream."""

        with Session(self.engine) as session:
            job = _job_row(session, job_id)
            if job is None:
                return None
            subjob_rows = session.exec(
                select(ResearchSubJob)
                .where(ResearchSubJob.job_id == job_id)
                .order_by(col(ResearchSubJob.id).asc()),
            ).all()
            event_rows = session.exec(
                select(ResearchJobEvent)
                .where(ResearchJobEvent.job_id == job_id)
                .order_by(col(ResearchJobEvent.id).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(job),
                subjobs=[_to_subjob_view(row) for row in subjob_rows],
                events=[_to_event_view(row) for row in event_rows],
            )

    def list_jobs(self, *, limit: int = 50, offset: int = 0) -> list[JobView]:
        """List the current user's jobs, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchJob)
                .where(ResearchJob.user_id == self.user_id)
                .order_by(col(ResearchJob.created_at).desc(), col(ResearchJob.id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def count_jobs(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(ResearchJob)
                .where(ResearchJob.user_id == self.user_id),
            ).one()

    def find_jobs_for_subject(self, normalized_subject: str) -> list[JobView]:
        """Jobs of the current user for one normalized subject, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchJob)
                .where(
                    ResearchJob.user_id == self.user_id,
                    ResearchJob.normalized_subject == normalized_subject,
                )
                .order_by(col(ResearchJob.created_at).desc(), col(ResearchJob.id).desc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def has_running_job(self) -> bool:
        with Session(self.engine) as session:
            found = session.exec(
                select(ResearchJob.id)
                .where(ResearchJob.status == JobStatus.RUNNING.value)
                .limit(1),
            ).first()
        return found is not None

    def count_queued_ahead(self, job_id: str) -> int | None:
        """Queued jobs that will be claimed before ``job_id``; None unless it is queued."""

        with Session(self.engine) as session:
            row = _job_row(session, job_id)
            if row is None or row.status != JobStatus.QUEUED.value:
                return None
            return session.exec(
                select(func.count())
                .select_from(ResearchJob)
                .where(
                    ResearchJob.status == JobStatus.QUEUED.value,
                    or_(
                        col(ResearchJob.queued_at) < row.queued_at,
                        (col(ResearchJob.queued_at) == row.queued_at)
                        & (col(ResearchJob.id) < row.id),
                    ),
                ),
            ).one()

    def get_queue_position(self, job_id: str) -> int | None:
        """Advisory count of jobs that will run before ``job_id``."""

        ahead = self.count_queued_ahead(job_id)
        if ahead is None:
            return None
        return ahead + (1 if self.has_running_job() else 0)

    def claim_next_queued_job(self) -> JobView | None:
        """Atomically move the oldest queued job to running.

        Nothing is claimed while another job is running anywhere in the store.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ResearchJob)
                    .where(ResearchJob.status == JobStatus.QUEUED.value)
                    .order_by(col(ResearchJob.queued_at).asc(), col(ResearchJob.id).asc())
                    .limit(1),
                ).first()
                if candidate is None:
                    return None

                running = aliased(ResearchJob)
                result = session.exec(
                    sa_update(ResearchJob)
                    .where(
                        col(ResearchJob.job_id) == candidate.job_id,
                        col(ResearchJob.status) == JobStatus.QUEUED.value,
                        ~exists().where(running.status == JobStatus.RUNNING.value),
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=now,
                        completed_at=None,
                        current_stage=None,
                        progress=0.0,
                        error_summary=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    if self.has_running_job():
                        return None
                    continue

                claimed = session.exec(
                    select(ResearchJob)
                    .where(ResearchJob.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED.value,
                    status_to=JobStatus.RUNNING.value,
                    details={},
                )
                session.commit()
                return _to_job_view(claimed)

    def update_job_progress(
        self,
        *,
        job_id: str,
        current_stage: StageId | None,
        progress: float,
    ) -> bool:
        """Observability-only progress write; applies only while running."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    current_stage=current_stage.value if current_stage is not None else None,
                    progress=max(0.0, min(1.0, progress)),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def finish_job(
        self,
        *,
        job_id: str,
        status: JobStatus,
        progress: float,
        error_summary: str | None = None,
    ) -> bool:
        """Move a running job to a terminal status."""

        if status not in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    current_stage=None,
                    progress=max(0.0, min(1.0, progress)),
                    error_summary=error_summary,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="finished",
                status_from=JobStatus.RUNNING.value,
                status_to=status.value,
                details={"error_summary": error_summary} if error_summary else {},
            )
            session.commit()
            return True

    def cancel_job(self, job_id: str) -> int:
        """Cancel a queued/running job and its open subjobs.

        Returns the number of subjobs moved to ``cancelled``.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _job_row(session, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            previous = JobStatus(row.status)
            if previous is JobStatus.CANCELLED:
                raise JobStateError(f"Job is already cancelled: {job_id}")
            if previous in TERMINAL_JOB_STATUSES:
                raise JobStateError(f"Job is already completed (status={previous.value}): {job_id}")

            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id) == job_id,
                    col(ResearchJob.status) == previous.value,
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    current_stage=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            cancelled = _close_subjobs(
                session,
                job_id=job_id,
                from_values=_OPEN_SUBJOB_VALUES,
                status=SubJobStatus.CANCELLED,
                now=now,
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cancelled",
                status_from=previous.value,
                status_to=JobStatus.CANCELLED.value,
                details={"cancelled_subjobs": cancelled},
            )
            session.commit()
            return cancelled

    def close_open_subjobs(self, job_id: str, *, reason: str) -> int:
        """Settle the subjobs a finished job left behind.

        Running subjobs become ``failed`` with ``reason`` as their error, pending
        ones become ``cancelled``. Nothing changes unless the job is terminal.
        Returns the number of subjobs closed.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _job_row(session, job_id)
            if row is None or JobStatus(row.status) not in TERMINAL_JOB_STATUSES:
                return 0
            failed = _close_subjobs(
                session,
                job_id=job_id,
                from_values=(SubJobStatus.RUNNING.value,),
                status=SubJobStatus.FAILED,
                now=now,
                last_error=reason,
            )
            cancelled = _close_subjobs(
                session,
                job_id=job_id,
                from_values=(SubJobStatus.PENDING.value,),
                status=SubJobStatus.CANCELLED,
                now=now,
            )
            if failed or cancelled:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="subjobs_closed",
                    status_from=row.status,
                    status_to=row.status,
                    details={
                        "failed_subjobs": failed,
                        "cancelled_subjobs": cancelled,
                        "reason": reason,
                    },
                )
            session.commit()
            return failed + cancelled

    def delete_job(self, job_id: str) -> bool:
        """Remove a job; subjobs and events go with it, bug reports stay."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(ResearchJob).where(col(ResearchJob.job_id) == job_id))
            session.commit()
            return result.rowcount == 1

    def requeue_interrupted_jobs(self) -> int:
        """Return jobs left running by a previous process to the queue head.

        Their running subjobs go back to pending; the interrupted attempt is not
        counted.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(ResearchJob.job_id).where(
                        ResearchJob.status == JobStatus.RUNNING.value,
                    ),
                ).all(),
            )
            if not job_ids:
                return 0
            session.exec(
                sa_update(ResearchSubJob)
                .where(
                    col(ResearchSubJob.job_id).in_(job_ids),
                    col(ResearchSubJob.status) == SubJobStatus.RUNNING.value,
                )
                .values(
                    status=SubJobStatus.PENDING.value,
                    started_at=None,
                    updated_at=now,
                ),
            )
            result = session.exec(
                sa_update(ResearchJob)
                .where(
                    col(ResearchJob.job_id).in_(job_ids),
                    col(ResearchJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    current_stage=None,
                    started_at=None,
                    updated_at=now,
                ),
            )
            for job_id in job_ids:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="requeued_after_interrupt",
                    status_from=JobStatus.RUNNING.value,
                    status_to=JobStatus.QUEUED.value,
                    details={},
                )
            session.commit()
            return result.rowcount

    # -- subjobs ----------------------------------------------------------------

    def start_subjob(self, *, subjob_id: str) -> bool:
        """Move a pending subjob of a running job to running."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchSubJob)
                .where(
                    col(ResearchSubJob.subjob_id) == subjob_id,
                    col(ResearchSubJob.status) == SubJobStatus.PENDING.value,
                    col(ResearchSubJob.job_id).in_(
                        select(ResearchJob.job_id).where(
                            ResearchJob.status == JobStatus.RUNNING.value,
                        ),
                    ),
                )
                .values(
                    status=SubJobStatus.RUNNING.value,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = _subjob_row(session, subjob_id)
            self._add_event(
                session=session,
                job_id=row.job_id,
                stage=row.stage,
                event_type="stage_started",
                status_from=SubJobStatus.PENDING.value,
                status_to=SubJobStatus.RUNNING.value,
                details={"attempt": row.attempts + 1},
            )
            session.commit()
            return True

    def complete_subjob(
        self,
        *,
        subjob_id: str,
        output: dict[str, Any],
        duration_ms: int,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchSubJob)
                .where(
                    col(ResearchSubJob.subjob_id) == subjob_id,
                    col(ResearchSubJob.status) == SubJobStatus.RUNNING.value,
                )
                .values(
                    status=SubJobStatus.COMPLETED.value,
                    output_json=dump_json(output),
                    completed_at=now,
                    duration_ms=duration_ms,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = _subjob_row(session, subjob_id)
            self._add_event(
                session=session,
                job_id=row.job_id,
                stage=row.stage,
                event_type="stage_completed",
                status_from=SubJobStatus.RUNNING.value,
                status_to=SubJobStatus.COMPLETED.value,
                details={"duration_ms": duration_ms},
            )
            session.commit()
            return True

    def retry_subjob(self, *, subjob_id: str, error: str, duration_ms: int) -> bool:
        """Count a failed attempt and return the subjob to pending."""

        return self._record_failed_attempt(
            subjob_id=subjob_id,
            status_to=SubJobStatus.PENDING,
            error=error,
            duration_ms=duration_ms,
        )

    def fail_subjob(self, *, subjob_id: str, error: str, duration_ms: int) -> bool:
        """Count the final attempt and mark the subjob permanently failed."""

        return self._record_failed_attempt(
            subjob_id=subjob_id,
            status_to=SubJobStatus.FAILED,
            error=error,
            duration_ms=duration_ms,
        )

    def block_subjob(self, *, subjob_id: str, reason: str) -> bool:
        """Cancel a pending subjob whose dependency can no longer complete."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchSubJob)
                .where(
                    col(ResearchSubJob.subjob_id) == subjob_id,
                    col(ResearchSubJob.status) == SubJobStatus.PENDING.value,
                )
                .values(
                    status=SubJobStatus.CANCELLED.value,
                    last_error=reason,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = _subjob_row(session, subjob_id)
            self._add_event(
                session=session,
                job_id=row.job_id,
                stage=row.stage,
                event_type="stage_blocked",
                status_from=SubJobStatus.PENDING.value,
                status_to=SubJobStatus.CANCELLED.value,
                details={"reason": reason},
            )
            session.commit()
            return True

    def _record_failed_attempt(
        self,
        *,
        subjob_id: str,
        status_to: SubJobStatus,
        error: str,
        duration_ms: int,
    ) -> bool:
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": status_to.value,
            "attempts": ResearchSubJob.attempts + 1,
            "last_error": error,
            "duration_ms": duration_ms,
            "updated_at": now,
        }
        if status_to is SubJobStatus.FAILED:
            values["completed_at"] = now
        else:
            values["started_at"] = None

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResearchSubJob)
                .where(
                    col(ResearchSubJob.subjob_id) == subjob_id,
                    col(ResearchSubJob.status) == SubJobStatus.RUNNING.value,
                    col(ResearchSubJob.attempts) < col(ResearchSubJob.max_attempts),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = _subjob_row(session, subjob_id)
            self._add_event(
                session=session,
                job_id=row.job_id,
                stage=row.stage,
                event_type="stage_failed" if status_to is SubJobStatus.FAILED else "stage_retry",
                status_from=SubJobStatus.RUNNING.value,
                status_to=status_to.value,
                details={
                    "attempts": row.attempts,
                    "max_attempts": row.max_attempts,
                    "error": error[:500],
                },
            )
            session.commit()
            return True

    # -- bug reports ------------------------------------------------------------

    def add_bug_report(self, report: BugReportWrite) -> BugReportView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = BugReport(
                bug_report_id=str(uuid4()),
                status=BugStatus.OPEN.value,
                severity=report.severity.value,
                category=report.category.value,
                title=report.title,
                description=report.description,
                error_message=report.error_message,
                error_stack=report.error_stack,
                error_fingerprint=report.error_fingerprint,
                job_id=report.job_id,
                subjob_id=report.subjob_id,
                stage=StageId(report.stage).value,
                subject_name=report.subject_name,
                report_type=report.report_type,
                geography=report.geography,
                industry=report.industry,
                attempts=report.attempts,
                max_attempts=report.max_attempts,
                error_context_json=dump_json(report.error_context)
                if report.error_context
                else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_bug_report_view(row)

    def get_bug_report(self, bug_report_id: str) -> BugReportView | None:
        with Session(self.engine) as session:
            row = _bug_report_row(session, bug_report_id)
            return _to_bug_report_view(row) if row is not None else None

    def list_bug_reports(
        self,
        *,
        filters: BugReportFilter | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> BugReportPage:
        """Filtered, paginated triage list, newest first."""

        page = max(1, page)
        limit = min(100, max(1, limit))
        conditions = _bug_report_conditions(filters or BugReportFilter())
        with Session(self.engine) as session:
            rows = session.exec(
                select(BugReport)
                .where(*conditions)
                .order_by(col(BugReport.created_at).desc(), col(BugReport.id).desc())
                .offset((page - 1) * limit)
                .limit(limit),
            ).all()
            total = session.exec(
                select(func.count()).select_from(BugReport).where(*conditions),
            ).one()
        return BugReportPage(
            items=[_to_bug_report_view(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    def bug_report_summary(self) -> BugReportSummary:
        """Unfiltered counters: open, critical unresolved, unresolved by category."""

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(BugReport)).one()
            open_count = session.exec(
                select(func.count())
                .select_from(BugReport)
                .where(BugReport.status == BugStatus.OPEN.value),
            ).one()
            critical_unresolved = session.exec(
                select(func.count())
                .select_from(BugReport)
                .where(
                    BugReport.severity == BugSeverity.CRITICAL.value,
                    BugReport.status != BugStatus.RESOLVED.value,
                ),
            ).one()
            category_rows = session.exec(
                select(BugReport.category, func.count())
                .where(BugReport.status != BugStatus.RESOLVED.value)
                .group_by(BugReport.category),
            ).all()
        return BugReportSummary(
            total=total,
            open_count=open_count,
            critical_unresolved=critical_unresolved,
            by_category={category: count for category, count in category_rows},
        )

    def update_bug_report(
        self,
        bug_report_id: str,
        *,
        status: BugStatus | None = None,
        resolution_notes: str | None = None,
        actor: str | None = None,
    ) -> BugReportView:
        with Session(self.engine) as session:
            row = _bug_report_row(session, bug_report_id)
            if row is None:
                raise BugReportNotFoundError(bug_report_id)
            now = utc_now()
            values = plan_bug_report_update(
                current_status=BugStatus(row.status),
                status=status,
                resolution_notes=resolution_notes,
                actor=actor,
                now=now,
            )
            for key, value in values.items():
                setattr(row, key, to_db_datetime(value) if isinstance(value, datetime) else value)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_bug_report_view(row)

    def delete_bug_report(self, bug_report_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(BugReport).where(col(BugReport.bug_report_id) == bug_report_id),
            )
            session.commit()
            return result.rowcount == 1

    def list_bug_reports_since(self, *, since: datetime, limit: int) -> list[BugReportView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BugReport)
                .where(col(BugReport.created_at) >= to_db_datetime(since))
                .order_by(col(BugReport.created_at).desc(), col(BugReport.id).desc())
                .limit(limit),
            ).all()
        return [_to_bug_report_view(row) for row in rows]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
        stage: str | None = None,
    ) -> None:
        session.add(
            ResearchJobEvent(
                job_id=job_id,
                stage=stage,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _job_row(session: Session, job_id: str) -> ResearchJob | None:
    return session.exec(select(ResearchJob).where(ResearchJob.job_id == job_id)).one_or_none()


def _close_subjobs(  # noqa: PLR0913
    session: Session,
    *,
    job_id: str,
    from_values: tuple[str, ...],
    status: SubJobStatus,
    now: datetime,
    last_error: str | None = None,
) -> int:
    values: dict[str, Any] = {"status": status.value, "completed_at": now, "updated_at": now}
    if last_error is not None:
        values["last_error"] = last_error
    result = session.exec(
        sa_update(ResearchSubJob)
        .where(
            col(ResearchSubJob.job_id) == job_id,
            col(ResearchSubJob.status).in_(from_values),
        )
        .values(**values),
    )
    return result.rowcount


def _subjob_row(session: Session, subjob_id: str) -> ResearchSubJob:
    return session.exec(
        select(ResearchSubJob).where(ResearchSubJob.subjob_id == subjob_id),
    ).one()


def _bug_report_row(session: Session, bug_report_id: str) -> BugReport | None:
    return session.exec(
        select(BugReport).where(BugReport.bug_report_id == bug_report_id),
    ).one_or_none()


def _bug_report_conditions(filters: BugReportFilter) -> list[Any]:
    conditions: list[Any] = []
    if filters.status is not None:
        conditions.append(BugReport.status == filters.status.value)
    if filters.severity is not None:
        conditions.append(BugReport.severity == filters.severity.value)
    if filters.category is not None:
        conditions.append(BugReport.category == filters.category.value)
    if filters.stage:
        conditions.append(BugReport.stage == filters.stage)
    return conditions


def _to_job_view(row: ResearchJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        subject_name=row.subject_name,
        normalized_subject=row.normalized_subject,
        geography=row.geography,
        industry=row.industry,
        report_type=ReportType(row.report_type),
        visibility_scope=VisibilityScope(row.visibility_scope),
        selected_sections=[StageId(item) for item in load_json_list(row.selected_sections_json)],
        focus_areas=load_json_list(row.focus_areas_json),
        status=JobStatus(row.status),
        current_stage=StageId(row.current_stage) if row.current_stage is not None else None,
        progress=row.progress,
        error_summary=row.error_summary,
        rerun_of_job_id=row.rerun_of_job_id,
        queued_at=to_utc_aware_datetime(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_subjob_view(row: ResearchSubJob) -> SubJobView:
    return SubJobView(
        subjob_id=row.subjob_id,
        job_id=row.job_id,
        stage=StageId(row.stage),
        dependencies=[StageId(item) for item in load_json_list(row.dependencies_json)],
        status=SubJobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        last_error=row.last_error,
        output=load_json_dict(row.output_json) if row.output_json else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: ResearchJobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        stage=StageId(row.stage) if row.stage is not None else None,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json_dict(row.details_json),
    )


def _to_bug_report_view(row: BugReport) -> BugReportView:
    return BugReportView(
        bug_report_id=row.bug_report_id,
        status=BugStatus(row.status),
        severity=BugSeverity(row.severity),
        category=BugCategory(row.category),
        title=row.title,
        description=row.description,
        error_message=row.error_message,
        error_stack=row.error_stack,
        error_fingerprint=row.error_fingerprint,
        job_id=row.job_id,
        subjob_id=row.subjob_id,
        stage=row.stage,
        subject_name=row.subject_name,
        report_type=row.report_type,
        geography=row.geography,
        industry=row.industry,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        error_context=load_json_dict(row.error_context_json),
        resolution_notes=row.resolution_notes,
        resolved_at=optional_utc(row.resolved_at),
        resolved_by=row.resolved_by,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
