"""Error taxonomy shared by the service, scheduler and CLI layers."""

from __future__ import annotations


class ReportRequestError(ValueError):
    """Invalid report request input."""


class UnknownStageError(ReportRequestError):
    """A requested section id is not part of the stage graph."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"Unknown stage: {stage!r}")
        self.stage = stage


class DuplicateJobError(RuntimeError):
    """A conflicting job already exists for the same subject."""

    def __init__(self, message: str, *, job_id: str, status: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.status = status

    @classmethod
    def active(cls, subject_name: str, *, job_id: str, status: str) -> DuplicateJobError:
        if status == "queued":
            message = (
                f"A report job for {subject_name} already exists in the queue (job_id={job_id})."
            )
        else:
            message = f"An active job is already running for {subject_name} (job_id={job_id})."
        return cls(message, job_id=job_id, status=status)


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(RuntimeError):
    """Requested mutation is not allowed from the job's current status."""


class BugReportNotFoundError(LookupError):
    def __init__(self, bug_report_id: str) -> None:
        super().__init__(f"Bug report not found: {bug_report_id}")
        self.bug_report_id = bug_report_id
