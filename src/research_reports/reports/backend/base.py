"""Executor interface for running one report stage."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from research_reports.reports.stages import StageId


class StageExecutionError(RuntimeError):
    """Stage attempt failed; ``raw_content`` keeps unparseable model output."""

    def __init__(self, message: str, *, raw_content: str | None = None) -> None:
        super().__init__(message)
        self.raw_content = raw_content


class StageCancelledError(RuntimeError):
    """Stage attempt stopped because its job was cancelled or deleted."""


class CancellationToken:
    """Cooperative cancellation flag shared between scheduler and executor."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""

        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StageCancelledError("Stage cancelled")


@dataclass(slots=True)
class StageRunRequest:
    """Inputs required to execute one stage attempt."""

    job_id: str
    stage: StageId
    subject_name: str
    geography: str
    report_type: str
    attempt: int
    industry: str | None = None
    focus_areas: tuple[str, ...] = ()
    dependency_outputs: Mapping[StageId, dict[str, Any]] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


@dataclass(slots=True)
class StageRunResult:
    """Structured stage output persisted on the subjob."""

    output: dict[str, Any]


class StageExecutor(Protocol):
    """Protocol implemented by stage runners."""

    def run(self, request: StageRunRequest) -> StageRunResult:
        """Run a stage attempt, raising ``StageExecutionError`` on failure."""


class StageExecutorRegistry:
    """Resolves the executor responsible for each stage."""

    def __init__(
        self,
        default: StageExecutor,
        overrides: Mapping[StageId, StageExecutor] | None = None,
    ) -> None:
        self.default = default
        self.overrides = dict(overrides or {})

    def for_stage(self, stage: StageId) -> StageExecutor:
        return self.overrides.get(stage, self.default)
