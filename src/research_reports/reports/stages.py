"""Static report stage graph and dependency helpers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from enum import Enum
from typing import Protocol

from research_reports.errors import UnknownStageError


class StageId(str, Enum):
    """Report sections plus the shared foundation research stage."""

    FOUNDATION = "foundation"
    FINANCIAL_SNAPSHOT = "financial_snapshot"
    COMPANY_OVERVIEW = "company_overview"
    EXEC_SUMMARY = "exec_summary"
    KEY_EXECS_AND_BOARD = "key_execs_and_board"
    SEGMENT_ANALYSIS = "segment_analysis"
    TRENDS = "trends"
    PEER_BENCHMARKING = "peer_benchmarking"
    SKU_OPPORTUNITIES = "sku_opportunities"
    RECENT_NEWS = "recent_news"
    CONVERSATION_STARTERS = "conversation_starters"
    APPENDIX = "appendix"


ROOT_STAGE = StageId.FOUNDATION

STAGE_DEPENDENCIES: Mapping[StageId, tuple[StageId, ...]] = {
    StageId.FOUNDATION: (),
    StageId.FINANCIAL_SNAPSHOT: (StageId.FOUNDATION,),
    StageId.COMPANY_OVERVIEW: (StageId.FOUNDATION,),
    StageId.EXEC_SUMMARY: (
        StageId.FOUNDATION,
        StageId.FINANCIAL_SNAPSHOT,
        StageId.COMPANY_OVERVIEW,
    ),
    StageId.KEY_EXECS_AND_BOARD: (StageId.FOUNDATION,),
    StageId.SEGMENT_ANALYSIS: (StageId.FOUNDATION,),
    StageId.TRENDS: (StageId.FOUNDATION,),
    StageId.PEER_BENCHMARKING: (StageId.FOUNDATION,),
    StageId.SKU_OPPORTUNITIES: (StageId.FOUNDATION,),
    StageId.RECENT_NEWS: (StageId.FOUNDATION,),
    StageId.CONVERSATION_STARTERS: (StageId.FOUNDATION,),
    StageId.APPENDIX: (StageId.FOUNDATION,),
}

# Legacy section numbering kept for report consumers that still sort by number.
SECTION_NUMBERS: Mapping[StageId, int] = {
    StageId.EXEC_SUMMARY: 1,
    StageId.FINANCIAL_SNAPSHOT: 2,
    StageId.COMPANY_OVERVIEW: 3,
    StageId.KEY_EXECS_AND_BOARD: 4,
    StageId.SEGMENT_ANALYSIS: 5,
    StageId.TRENDS: 6,
    StageId.PEER_BENCHMARKING: 7,
    StageId.SKU_OPPORTUNITIES: 8,
    StageId.RECENT_NEWS: 9,
    StageId.CONVERSATION_STARTERS: 10,
    StageId.APPENDIX: 11,
}

DEFAULT_SECTIONS: tuple[StageId, ...] = tuple(
    sorted(SECTION_NUMBERS, key=lambda stage: SECTION_NUMBERS[stage]),
)
_SECTION_NUMBER_BY_VALUE = {stage.value: number for stage, number in SECTION_NUMBERS.items()}


class StageState(Protocol):
    """Anything carrying a stage id and a subjob status."""

    @property
    def stage(self) -> str: ...

    @property
    def status(self) -> str: ...


def _topological_order(graph: Mapping[StageId, tuple[StageId, ...]]) -> tuple[StageId, ...]:
    ordered: list[StageId] = []
    placed: set[StageId] = set()
    remaining = list(graph)
    while remaining:
        progressed = False
        for stage in list(remaining):
            if all(dependency in placed for dependency in graph[stage]):
                ordered.append(stage)
                placed.add(stage)
                remaining.remove(stage)
                progressed = True
        if not progressed:
            raise RuntimeError(f"Stage graph has a cycle among: {remaining}")
    return tuple(ordered)


STAGE_ORDER: tuple[StageId, ...] = _topological_order(STAGE_DEPENDENCIES)
_STAGE_RANK = {stage: index for index, stage in enumerate(STAGE_ORDER)}


def parse_stage(value: str | StageId) -> StageId:
    """Parse a stage id, raising a request error for unknown values."""

    if isinstance(value, StageId):
        return value
    try:
        return StageId(value.strip().lower())
    except ValueError as error:
        raise UnknownStageError(value) from error


def order_stages(stages: Iterable[str | StageId]) -> list[StageId]:
    """Deduplicate and sort stages dependency-first."""

    return sorted({parse_stage(stage) for stage in stages}, key=_STAGE_RANK.__getitem__)


def expand_stages(requested: Iterable[str | StageId]) -> list[StageId]:
    """Return the dependency closure of ``requested`` in execution order.

    The foundation stage is always included. An empty request means the
    full default section set.
    """

    pending = [parse_stage(stage) for stage in requested]
    if not pending:
        pending = list(DEFAULT_SECTIONS)
    pending.append(ROOT_STAGE)

    closure: set[StageId] = set()
    while pending:
        stage = pending.pop()
        if stage in closure:
            continue
        closure.add(stage)
        pending.extend(STAGE_DEPENDENCIES[stage])
    return order_stages(closure)


def collect_blocked_stages(
    failed_stages: Iterable[str],
    subjobs: Sequence[StageState],
    dependencies: Mapping[StageId, tuple[StageId, ...]] = STAGE_DEPENDENCIES,
) -> list[StageId]:
    """Pending stages that can never run because a dependency failed.

    Blocking is transitive: a pending stage that depends on a blocked stage is
    blocked as well.
    """

    unavailable = {parse_stage(stage) for stage in failed_stages}
    pending = [
        parse_stage(subjob.stage)
        for subjob in subjobs
        if _plain_value(subjob.status) == "pending"
    ]
    blocked: list[StageId] = []
    changed = True
    while changed:
        changed = False
        for stage in pending:
            if stage in unavailable:
                continue
            if any(dependency in unavailable for dependency in dependencies.get(stage, ())):
                unavailable.add(stage)
                blocked.append(stage)
                changed = True
    return sorted(blocked, key=_STAGE_RANK.__getitem__)


def compute_rerun_stages(
    requested: Iterable[str],
    subjobs: Sequence[StageState],
    dependencies: Mapping[StageId, tuple[StageId, ...]] = STAGE_DEPENDENCIES,
) -> list[StageId]:
    """Requested stages plus any dependency that did not complete last time."""

    status_by_stage = {
        parse_stage(subjob.stage): _plain_value(subjob.status) for subjob in subjobs
    }
    selected: set[StageId] = set()
    pending = [parse_stage(stage) for stage in requested]
    while pending:
        stage = pending.pop()
        if stage in selected:
            continue
        selected.add(stage)
        for dependency in dependencies.get(stage, ()):
            status = status_by_stage.get(dependency)
            if status is not None and status != "completed":
                pending.append(dependency)
    return sorted(selected, key=_STAGE_RANK.__getitem__)


def build_completed_stages(
    subjobs: Sequence[StageState],
    order: Sequence[str] | None = None,
) -> list[str]:
    """Completed content stages, in ``order`` when given, else alphabetical."""

    completed = {
        _plain_value(subjob.stage)
        for subjob in subjobs
        if _plain_value(subjob.status) == "completed"
        and _plain_value(subjob.stage) != ROOT_STAGE.value
    }
    if order is None:
        return sorted(completed)
    return [stage for stage in order if stage in completed]


def generated_section_numbers(subjobs: Sequence[StageState]) -> list[int]:
    return sorted(
        _SECTION_NUMBER_BY_VALUE[stage]
        for stage in build_completed_stages(subjobs)
        if stage in _SECTION_NUMBER_BY_VALUE
    )


def _plain_value(value: object) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)
