"""Stage executor implementations."""

from research_reports.reports.backend.base import (
    CancellationToken,
    StageCancelledError,
    StageExecutionError,
    StageExecutor,
    StageExecutorRegistry,
    StageRunRequest,
    StageRunResult,
)
from research_reports.reports.backend.echo import EchoStageExecutor

__all__ = [
    "CancellationToken",
    "EchoStageExecutor",
    "StageCancelledError",
    "StageExecutionError",
    "StageExecutor",
    "StageExecutorRegistry",
    "StageRunRequest",
    "StageRunResult",
]
