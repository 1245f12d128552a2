"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from research_reports.config import SchedulerSettings
from research_reports.reports.backend import (
    EchoStageExecutor,
    StageExecutionError,
    StageExecutorRegistry,
    StageRunRequest,
    StageRunResult,
)
from research_reports.reports.bug_reports import BugReporter
from research_reports.reports.repository import ReportRepository
from research_reports.reports.scheduler import ReportScheduler
from research_reports.reports.services import ReportService
from research_reports.reports.stages import StageId


class GatedExecutor:
    """Holds the gated subject's root stage until released or cancelled."""

    def __init__(self, *, gated_subject: str) -> None:
        self.gated_subject = gated_subject
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls: list[tuple[str, StageId]] = []
        self._lock = threading.Lock()

    def run(self, request: StageRunRequest) -> StageRunResult:
        with self._lock:
            self.calls.append((request.subject_name, request.stage))
        if request.subject_name == self.gated_subject and request.stage is StageId.FOUNDATION:
            self.started.set()
            while not self.release.is_set():
                if request.cancel_token.wait(0.01):
                    break
            request.cancel_token.raise_if_cancelled()
        return StageRunResult(output={"stage": request.stage.value})


class FlakyExecutor:
    """Fails each listed stage a fixed number of times, then succeeds."""

    def __init__(self, failures: dict[StageId, int], message: str = "upstream 503") -> None:
        self.remaining = dict(failures)
        self.message = message
        self.attempts: list[tuple[StageId, int]] = []

    def run(self, request: StageRunRequest) -> StageRunResult:
        self.attempts.append((request.stage, request.attempt))
        if self.remaining.get(request.stage, 0) > 0:
            self.remaining[request.stage] -= 1
            raise StageExecutionError(self.message, raw_content="{")
        return StageRunResult(
            output={
                "stage": request.stage.value,
                "inputs": sorted(stage.value for stage in request.dependency_outputs),
            },
        )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "reports.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ReportRepository]:
    repo = ReportRepository(db_path=db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(
        max_attempts=3,
        poll_interval_seconds=0.01,
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
    )


@pytest.fixture()
def make_scheduler(repository: ReportRepository, scheduler_settings: SchedulerSettings):
    """Factory building a scheduler around the given executor."""

    def _make(executor=None, *, settings: SchedulerSettings | None = None) -> ReportScheduler:
        return ReportScheduler(
            repository=repository,
            executors=StageExecutorRegistry(executor or EchoStageExecutor()),
            bug_reporter=BugReporter(sink=repository),
            settings=settings or scheduler_settings,
        )

    return _make


@pytest.fixture()
def service(repository: ReportRepository) -> ReportService:
    """Service without a scheduler: jobs stay queued until drained explicitly."""

    return ReportService(repository=repository)
