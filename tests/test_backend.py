from __future__ import annotations

from dataclasses import fields

import allure
import pytest

from research_reports.reports.backend import (
    CancellationToken,
    EchoStageExecutor,
    StageCancelledError,
    StageExecutionError,
    StageExecutorRegistry,
    StageRunRequest,
    StageRunResult,
)
from research_reports.reports.stages import StageId

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("Stage Executors"),
]


def _request(stage: StageId, **kwargs) -> StageRunRequest:
    return StageRunRequest(
        job_id="job-1",
        stage=stage,
        subject_name="Acme",
        geography="Global",
        report_type="GENERIC",
        attempt=1,
        **kwargs,
    )


def test_echo_result_carries_only_structured_output():
    result = EchoStageExecutor().run(
        _request(
            StageId.TRENDS,
            focus_areas=("pricing",),
            dependency_outputs={StageId.FOUNDATION: {"stage": "foundation"}},
        ),
    )

    assert [item.name for item in fields(StageRunResult)] == ["output"]
    assert result.output == {
        "stage": "trends",
        "summary": "Trends for Acme",
        "geography": "Global",
        "report_type": "GENERIC",
        "focus_areas": ["pricing"],
        "depends_on": ["foundation"],
    }


def test_echo_failure_keeps_raw_content_on_the_error():
    executor = EchoStageExecutor(fail_stages=["trends"])

    with pytest.raises(StageExecutionError, match="fail stage trends") as failure:
        executor.run(_request(StageId.TRENDS))

    assert failure.value.raw_content == '{"stage": "trends", "partial": true'


def test_echo_honours_cancellation():
    token = CancellationToken()
    token.cancel()

    with pytest.raises(StageCancelledError):
        EchoStageExecutor(delay_seconds=5).run(_request(StageId.FOUNDATION, cancel_token=token))


def test_registry_prefers_stage_overrides():
    default = EchoStageExecutor()
    special = EchoStageExecutor(fail_stages=["appendix"])
    registry = StageExecutorRegistry(default, {StageId.APPENDIX: special})

    assert registry.for_stage(StageId.APPENDIX) is special
    assert registry.for_stage(StageId.TRENDS) is default
