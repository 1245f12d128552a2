"""Effective status derivation for report jobs.

A job row only stores the coarse lifecycle written by the scheduler. Every
reader (list views, detail views, the duplicate-job guard) reports the status
derived here from the row plus its subjobs, so the rules live in one place.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

from research_reports.reports.models import EffectiveStatus, JobStatus, SubJobStatus
from research_reports.reports.stages import ROOT_STAGE, StageState

ACTIVE_STATUSES = frozenset(
    {EffectiveStatus.QUEUED, EffectiveStatus.RUNNING, EffectiveStatus.RUNNING_WITH_ERRORS},
)
_AUTHORITATIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.CANCELLED, JobStatus.FAILED})
_TERMINAL_SUBJOB_VALUES = frozenset(
    {SubJobStatus.COMPLETED.value, SubJobStatus.FAILED.value, SubJobStatus.CANCELLED.value},
)

JobT = TypeVar("JobT")


def derive_job_status(
    job_status: JobStatus | str,
    subjobs: Sequence[StageState],
) -> EffectiveStatus:
    """Compute the status a reader should see for one job."""

    status = JobStatus(_value(job_status))
    if status in _AUTHORITATIVE_JOB_STATUSES:
        return EffectiveStatus(status.value)

    statuses = [_value(subjob.status) for subjob in subjobs]
    if any(
        _value(subjob.stage) == ROOT_STAGE.value
        and _value(subjob.status) == SubJobStatus.FAILED.value
        for subjob in subjobs
    ):
        return EffectiveStatus.FAILED
    if not statuses:
        return EffectiveStatus(status.value)

    any_failed = SubJobStatus.FAILED.value in statuses
    if not all(value in _TERMINAL_SUBJOB_VALUES for value in statuses):
        if status is JobStatus.RUNNING and any_failed:
            return EffectiveStatus.RUNNING_WITH_ERRORS
        return EffectiveStatus(status.value)

    if any_failed:
        return EffectiveStatus.COMPLETED_WITH_ERRORS
    if SubJobStatus.CANCELLED.value in statuses:
        return EffectiveStatus.CANCELLED
    return EffectiveStatus.COMPLETED


def compute_final_status(subjobs: Sequence[StageState]) -> JobStatus:
    """Job row status the scheduler writes once it stops working on a job."""

    derived = derive_job_status(JobStatus.RUNNING, subjobs)
    if derived in {EffectiveStatus.COMPLETED, EffectiveStatus.COMPLETED_WITH_ERRORS}:
        return JobStatus.COMPLETED
    if derived is EffectiveStatus.CANCELLED:
        return JobStatus.CANCELLED
    # Failed foundation, or stages left unfinished.
    return JobStatus.FAILED


def compute_terminal_progress(subjobs: Sequence[StageState]) -> float:
    if not subjobs:
        return 0.0
    terminal = sum(1 for subjob in subjobs if _value(subjob.status) in _TERMINAL_SUBJOB_VALUES)
    return terminal / len(subjobs)


def is_active(status: EffectiveStatus) -> bool:
    return status in ACTIVE_STATUSES


def filter_jobs_by_derived_status(
    jobs: Sequence[tuple[JobT, JobStatus | str, Sequence[StageState]]],
    status: EffectiveStatus | str | None = None,
) -> list[JobT]:
    """Keep jobs whose derived status matches ``status``; no filter keeps all."""

    if status is None or status == "":
        return [job for job, _, _ in jobs]
    wanted = EffectiveStatus(_value(status))
    return [
        job
        for job, job_status, subjobs in jobs
        if derive_job_status(job_status, subjobs) is wanted
    ]


def _value(value: object) -> str:
    return str(getattr(value, "value", value))
