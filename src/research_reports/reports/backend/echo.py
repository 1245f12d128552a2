"""Deterministic local stage executor for demos and tests."""

from __future__ import annotations

from collections.abc import Iterable

from research_reports.reports.backend.base import (
    StageExecutionError,
    StageRunRequest,
    StageRunResult,
)
from research_reports.reports.stages import StageId


class EchoStageExecutor:
    """Produces a small structured section without calling any model.

    ``fail_stages`` always fail, which makes retry and bug-report paths easy to
    exercise from the CLI.
    """

    def __init__(
        self,
        *,
        delay_seconds: float = 0.0,
        fail_stages: Iterable[str] = (),
    ) -> None:
        self.delay_seconds = delay_seconds
        self.fail_stages = frozenset(str(StageId(stage).value) for stage in fail_stages)

    def run(self, request: StageRunRequest) -> StageRunResult:
        if self.delay_seconds > 0:
            request.cancel_token.wait(self.delay_seconds)
        request.cancel_token.raise_if_cancelled()

        stage = request.stage.value
        if stage in self.fail_stages:
            raise StageExecutionError(
                f"Echo executor configured to fail stage {stage} "
                f"(attempt {request.attempt})",
                raw_content=f'{{"stage": "{stage}", "partial": true',
            )

        summary = f"{stage.replace('_', ' ').title()} for {request.subject_name}"
        return StageRunResult(
            output={
                "stage": stage,
                "summary": summary,
                "geography": request.geography,
                "report_type": request.report_type,
                "focus_areas": list(request.focus_areas),
                "depends_on": sorted(dependency.value for dependency in request.dependency_outputs),
            },
        )
