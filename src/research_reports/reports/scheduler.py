"""Serialized queue drain and per-job stage DAG execution."""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from research_reports.config import SchedulerSettings
from research_reports.reports.backend import (
    CancellationToken,
    StageCancelledError,
    StageExecutorRegistry,
    StageRunRequest,
)
from research_reports.reports.bug_reports import BugReporter, StageFailure
from research_reports.reports.models import JobStatus, JobView, SubJobStatus, SubJobView
from research_reports.reports.repository import ReportRepository
from research_reports.reports.stages import StageId, collect_blocked_stages
from research_reports.reports.status import compute_final_status, compute_terminal_progress

logger = logging.getLogger(__name__)

ERROR_SUMMARY_MAX_CHARS = 500


@dataclass(slots=True)
class StageOutcome:
    """Result of one stage attempt as seen by the job loop."""

    stage: StageId
    completed: bool = False
    retried: bool = False
    failed: bool = False
    aborted: bool = False
    retry_delay_seconds: float = 0.0


@dataclass(slots=True)
class JobRunSummary:
    """Counters for one ``execute_job`` call."""

    job_id: str
    final_status: JobStatus | None = None
    completed: list[StageId] = field(default_factory=list)
    failed: list[StageId] = field(default_factory=list)
    blocked: list[StageId] = field(default_factory=list)
    retries: int = 0
    aborted: bool = False


class ReportScheduler:
    """Drains the job queue one job at a time.

    A trigger that arrives while a drain is in progress is folded into that
    drain instead of starting a second one, so the process never runs two jobs
    at once. The store-level claim enforces the same bound across processes.
    """

    def __init__(
        self,
        *,
        repository: ReportRepository,
        executors: StageExecutorRegistry,
        bug_reporter: BugReporter,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.executors = executors
        self.bug_reporter = bug_reporter
        self.settings = settings or SchedulerSettings()
        self._random = random.Random()  # noqa: S311
        self._drain_lock = threading.Lock()
        self._rerun_requested = threading.Event()
        self._stop_requested = threading.Event()
        self._threads_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def start(self) -> threading.Thread:
        """Recover jobs interrupted by a previous process and start draining."""

        if self.settings.recover_on_start:
            requeued = self.repository.requeue_interrupted_jobs()
            if requeued:
                logger.warning("Requeued %d job(s) interrupted by a previous run", requeued)
        return self.trigger()

    def trigger(self) -> threading.Thread:
        """Drain the queue on a background thread; returns immediately."""

        self._stop_requested.clear()
        thread = threading.Thread(target=self._drain_safely, daemon=True, name="report-queue")
        with self._threads_lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def stop(self, timeout: float | None = None) -> bool:
        """Ask the drain loop to stop after the current stage attempt."""

        self._stop_requested.set()
        return self.wait_idle(timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Join drain threads and pending bug reports. Returns False on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._threads_lock:
                threads = [item for item in self._threads if item.is_alive()]
                self._threads = threads
            if not threads:
                break
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._threads_lock:
                    if any(item.is_alive() for item in self._threads):
                        return False
                break
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return self.bug_reporter.wait_idle(remaining)

    def process_queue(self) -> int:
        """Run queued jobs until none is left; returns how many were run here.

        Returns 0 immediately when another drain holds the loop; that drain
        picks up the request before it exits.
        """

        processed = 0
        while True:
            self._rerun_requested.set()
            if not self._drain_lock.acquire(blocking=False):
                return processed
            try:
                self._rerun_requested.clear()
                processed += self._drain()
            finally:
                self._drain_lock.release()
            if self._stop_requested.is_set() or not self._rerun_requested.is_set():
                return processed

    def get_queue_position(self, job_id: str) -> int | None:
        """Jobs that will run before ``job_id``; None when it is not queued."""

        return self.repository.get_queue_position(job_id)

    def execute_job(self, job: JobView) -> JobRunSummary:
        """Drive one claimed job's stage DAG until no stage can make progress."""

        summary = JobRunSummary(job_id=job.job_id)
        token = CancellationToken()
        watcher_done = threading.Event()
        watcher = threading.Thread(
            target=self._watch_cancellation,
            args=(job.job_id, token, watcher_done),
            daemon=True,
            name=f"report-watch-{job.job_id[:8]}",
        )
        watcher.start()
        logger.info("Job %s started: subject=%r", job.job_id, job.subject_name)
        try:
            self._run_stages(job=job, token=token, summary=summary)
            if summary.aborted:
                logger.info("Job %s aborted: cancelled, deleted or stopping", job.job_id)
                return summary
            self._finish(job=job, summary=summary)
        except Exception as error:
            logger.exception("Job %s crashed in scheduler", job.job_id)
            token.cancel()
            reason = (str(error) or type(error).__name__)[:ERROR_SUMMARY_MAX_CHARS]
            try:
                marked = self.repository.finish_job(
                    job_id=job.job_id,
                    status=JobStatus.FAILED,
                    progress=job.progress,
                    error_summary=reason,
                )
            except Exception:
                logger.exception("Failed to mark job %s as failed", job.job_id)
                marked = False
            # A job still marked running keeps its subjobs for the restart requeue.
            if marked:
                try:
                    self.repository.close_open_subjobs(job.job_id, reason=reason)
                except Exception:
                    logger.exception("Failed to close open stages of job %s", job.job_id)
            summary.final_status = JobStatus.FAILED
        finally:
            watcher_done.set()
            watcher.join(self.settings.poll_interval_seconds * 2)
        return summary

    def _drain_safely(self) -> None:
        try:
            self.process_queue()
        except Exception:
            logger.exception("Queue drain failed")

    def _drain(self) -> int:
        processed = 0
        while not self._stop_requested.is_set():
            try:
                job = self.repository.claim_next_queued_job()
            except Exception:
                logger.exception("Failed to claim next queued job")
                return processed
            if job is None:
                return processed
            self.execute_job(job)
            processed += 1
        return processed

    def _watch_cancellation(
        self,
        job_id: str,
        token: CancellationToken,
        done: threading.Event,
    ) -> None:
        while not done.wait(self.settings.poll_interval_seconds):
            if self._stop_requested.is_set():
                token.cancel()
                return
            try:
                status = self.repository.get_job_status(job_id)
            except Exception:
                logger.exception("Cancellation poll failed for job %s", job_id)
                continue
            if status is not JobStatus.RUNNING:
                logger.info(
                    "Job %s is no longer running (status=%s)",
                    job_id,
                    status.value if status else "deleted",
                )
                token.cancel()
                return

    def _run_stages(  # noqa: C901
        self,
        *,
        job: JobView,
        token: CancellationToken,
        summary: JobRunSummary,
    ) -> None:
        not_before: dict[str, float] = {}
        parallel = max(1, self.settings.max_parallel_stages)
        pool = ThreadPoolExecutor(max_workers=parallel) if parallel > 1 else None
        try:
            while True:
                if token.cancelled or self._stop_requested.is_set():
                    summary.aborted = True
                    return
                if self.repository.get_job_status(job.job_id) is not JobStatus.RUNNING:
                    token.cancel()
                    summary.aborted = True
                    return

                subjobs = self.repository.list_subjobs(job.job_id)
                if self._block_unreachable(subjobs, summary):
                    continue

                ready = _ready_subjobs(subjobs)
                if not ready:
                    stuck = [item for item in subjobs if item.status is SubJobStatus.PENDING]
                    if stuck:
                        logger.error(
                            "Job %s has pending stages with unmet dependencies: %s",
                            job.job_id,
                            ", ".join(item.stage.value for item in stuck),
                        )
                    return

                now = time.monotonic()
                eligible = [item for item in ready if not_before.get(item.subjob_id, 0.0) <= now]
                if not eligible:
                    wake_at = min(not_before[item.subjob_id] for item in ready)
                    token.wait(max(0.0, wake_at - now))
                    continue

                outputs = {
                    item.stage: item.output or {}
                    for item in subjobs
                    if item.status is SubJobStatus.COMPLETED
                }
                batch = eligible[:parallel]
                if pool is None:
                    outcomes = [
                        self._run_stage(job=job, subjob=item, outputs=outputs, token=token)
                        for item in batch
                    ]
                else:
                    futures = [
                        pool.submit(
                            self._run_stage,
                            job=job,
                            subjob=item,
                            outputs=outputs,
                            token=token,
                        )
                        for item in batch
                    ]
                    outcomes = [future.result() for future in futures]

                for subjob, outcome in zip(batch, outcomes, strict=True):
                    if outcome.aborted:
                        token.cancel()
                        summary.aborted = True
                    elif outcome.completed:
                        summary.completed.append(outcome.stage)
                    elif outcome.failed:
                        summary.failed.append(outcome.stage)
                    elif outcome.retried:
                        summary.retries += 1
                        not_before[subjob.subjob_id] = (
                            time.monotonic() + outcome.retry_delay_seconds
                        )
                if summary.aborted:
                    return
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

    def _block_unreachable(self, subjobs: list[SubJobView], summary: JobRunSummary) -> bool:
        unavailable = [
            item.stage.value
            for item in subjobs
            if item.status in {SubJobStatus.FAILED, SubJobStatus.CANCELLED}
        ]
        if not unavailable:
            return False
        blocked = collect_blocked_stages(unavailable, subjobs)
        if not blocked:
            return False
        by_stage = {item.stage: item for item in subjobs}
        changed = False
        for stage in blocked:
            subjob = by_stage[stage]
            failed_dependencies = [
                dependency.value
                for dependency in subjob.dependencies
                if dependency.value in unavailable or dependency in blocked
            ]
            reason = f"Blocked by failed dependencies: {', '.join(failed_dependencies)}"
            if self.repository.block_subjob(subjob_id=subjob.subjob_id, reason=reason):
                summary.blocked.append(stage)
                changed = True
                logger.info("Stage %s of job %s blocked: %s", stage.value, subjob.job_id, reason)
        return changed

    def _run_stage(
        self,
        *,
        job: JobView,
        subjob: SubJobView,
        outputs: dict[StageId, dict[str, Any]],
        token: CancellationToken,
    ) -> StageOutcome:
        stage = subjob.stage
        outcome = StageOutcome(stage=stage)
        if not self.repository.start_subjob(subjob_id=subjob.subjob_id):
            outcome.aborted = True
            return outcome

        self.repository.update_job_progress(
            job_id=job.job_id,
            current_stage=stage,
            progress=compute_terminal_progress(self.repository.list_subjobs(job.job_id)),
        )
        attempt = subjob.attempts + 1
        request = StageRunRequest(
            job_id=job.job_id,
            stage=stage,
            subject_name=job.subject_name,
            geography=job.geography,
            report_type=job.report_type.value,
            attempt=attempt,
            industry=job.industry,
            focus_areas=tuple(job.focus_areas),
            dependency_outputs={
                dependency: outputs[dependency]
                for dependency in subjob.dependencies
                if dependency in outputs
            },
            cancel_token=token,
        )
        logger.debug("Job %s stage %s attempt %d", job.job_id, stage.value, attempt)
        started = time.monotonic()
        try:
            result = self.executors.for_stage(stage).run(request)
        except StageCancelledError:
            outcome.aborted = True
            return outcome
        except Exception as error:
            duration_ms = int((time.monotonic() - started) * 1000)
            return self._handle_stage_error(
                job=job,
                subjob=subjob,
                error=error,
                attempt=attempt,
                duration_ms=duration_ms,
                outcome=outcome,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        if not self.repository.complete_subjob(
            subjob_id=subjob.subjob_id,
            output=result.output,
            duration_ms=duration_ms,
        ):
            # The row moved on underneath us (cancel or delete); drop the result.
            outcome.aborted = True
            return outcome
        outcome.completed = True
        logger.info(
            "Job %s stage %s completed in %d ms",
            job.job_id,
            stage.value,
            duration_ms,
        )
        return outcome

    def _handle_stage_error(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        subjob: SubJobView,
        error: Exception,
        attempt: int,
        duration_ms: int,
        outcome: StageOutcome,
    ) -> StageOutcome:
        message = (str(error) or type(error).__name__)[:ERROR_SUMMARY_MAX_CHARS]
        if attempt < subjob.max_attempts:
            if not self.repository.retry_subjob(
                subjob_id=subjob.subjob_id,
                error=message,
                duration_ms=duration_ms,
            ):
                outcome.aborted = True
                return outcome
            outcome.retried = True
            outcome.retry_delay_seconds = self._compute_retry_delay(retry_number=attempt)
            logger.warning(
                "Job %s stage %s attempt %d/%d failed, retrying in %.2fs: %s",
                job.job_id,
                subjob.stage.value,
                attempt,
                subjob.max_attempts,
                outcome.retry_delay_seconds,
                message,
            )
            return outcome

        if not self.repository.fail_subjob(
            subjob_id=subjob.subjob_id,
            error=message,
            duration_ms=duration_ms,
        ):
            outcome.aborted = True
            return outcome
        outcome.failed = True
        logger.error(
            "Job %s stage %s failed permanently after %d attempts: %s",
            job.job_id,
            subjob.stage.value,
            attempt,
            message,
        )
        self.bug_reporter.report_detached(
            StageFailure(
                stage=subjob.stage,
                error=error,
                subject_name=job.subject_name,
                attempts=attempt,
                max_attempts=subjob.max_attempts,
                job_id=job.job_id,
                subjob_id=subjob.subjob_id,
                report_type=job.report_type.value,
                geography=job.geography,
                industry=job.industry,
                raw_content=getattr(error, "raw_content", None),
                dependencies=[dependency.value for dependency in subjob.dependencies],
                selected_sections=[stage.value for stage in job.selected_sections],
                focus_areas=job.focus_areas,
            ),
        )
        return outcome

    def _finish(self, *, job: JobView, summary: JobRunSummary) -> None:
        subjobs = self.repository.list_subjobs(job.job_id)
        final_status = compute_final_status(subjobs)
        failed = [item.stage.value for item in subjobs if item.status is SubJobStatus.FAILED]
        error_summary = f"Failed stages: {', '.join(failed)}" if failed else None
        try:
            finished = self.repository.finish_job(
                job_id=job.job_id,
                status=final_status,
                progress=compute_terminal_progress(subjobs),
                error_summary=error_summary,
            )
        except Exception:
            logger.exception("Failed to record final status for job %s", job.job_id)
            return
        if finished:
            summary.final_status = final_status
            logger.info("Job %s finished: status=%s", job.job_id, final_status.value)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)


def _ready_subjobs(subjobs: list[SubJobView]) -> list[SubJobView]:
    completed = {item.stage for item in subjobs if item.status is SubJobStatus.COMPLETED}
    return [
        item
        for item in subjobs
        if item.status is SubJobStatus.PENDING
        and all(dependency in completed for dependency in item.dependencies)
    ]
