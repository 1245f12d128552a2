from __future__ import annotations

from dataclasses import dataclass

import allure
import pytest

from research_reports.errors import ReportRequestError, UnknownStageError
from research_reports.reports.stages import (
    DEFAULT_SECTIONS,
    ROOT_STAGE,
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    StageId,
    build_completed_stages,
    collect_blocked_stages,
    compute_rerun_stages,
    expand_stages,
    generated_section_numbers,
    order_stages,
    parse_stage,
)

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("Stage Graph"),
]


@dataclass
class _Sub:
    stage: str
    status: str


def test_exec_summary_expands_to_its_dependency_closure():
    assert expand_stages(["exec_summary"]) == [
        StageId.FOUNDATION,
        StageId.FINANCIAL_SNAPSHOT,
        StageId.COMPANY_OVERVIEW,
        StageId.EXEC_SUMMARY,
    ]


def test_expansion_always_includes_root_and_is_idempotent():
    for stage in StageId:
        expanded = expand_stages([stage])
        assert ROOT_STAGE in expanded
        assert expand_stages(expanded) == expanded


def test_empty_request_expands_to_default_sections():
    expanded = expand_stages([])
    assert set(expanded) == {ROOT_STAGE, *DEFAULT_SECTIONS}
    assert expanded[0] is ROOT_STAGE


def test_expanded_stages_are_dependency_first():
    expanded = expand_stages(["exec_summary", "trends"])
    for index, stage in enumerate(expanded):
        for dependency in STAGE_DEPENDENCIES[stage]:
            assert expanded.index(dependency) < index


def test_stage_order_covers_graph():
    assert set(STAGE_ORDER) == set(StageId)
    assert STAGE_ORDER[0] is ROOT_STAGE


def test_parse_stage_rejects_unknown_values():
    assert parse_stage(" Trends ") is StageId.TRENDS
    with pytest.raises(UnknownStageError, match="Unknown stage"):
        parse_stage("horoscope")
    with pytest.raises(ReportRequestError):
        expand_stages(["trends", "nope"])


def test_order_stages_deduplicates():
    assert order_stages(["trends", "foundation", "trends"]) == [StageId.FOUNDATION, StageId.TRENDS]


def test_blocked_stages_are_transitive():
    subjobs = [
        _Sub("foundation", "completed"),
        _Sub("financial_snapshot", "failed"),
        _Sub("company_overview", "pending"),
        _Sub("exec_summary", "pending"),
        _Sub("trends", "pending"),
    ]
    assert collect_blocked_stages(["financial_snapshot"], subjobs) == [StageId.EXEC_SUMMARY]

    root_failed = [_Sub("foundation", "failed"), *subjobs[1:]]
    assert collect_blocked_stages(["foundation"], root_failed) == [
        StageId.COMPANY_OVERVIEW,
        StageId.EXEC_SUMMARY,
        StageId.TRENDS,
    ]


def test_rerun_stages_include_failed_dependencies():
    subjobs = [
        _Sub("financial_snapshot", "failed"),
        _Sub("company_overview", "completed"),
        _Sub("exec_summary", "failed"),
    ]
    assert compute_rerun_stages(["exec_summary"], subjobs) == [
        StageId.FINANCIAL_SNAPSHOT,
        StageId.EXEC_SUMMARY,
    ]


def test_completed_stages_exclude_root_and_follow_order():
    subjobs = [
        _Sub("foundation", "completed"),
        _Sub("trends", "completed"),
        _Sub("appendix", "completed"),
        _Sub("exec_summary", "failed"),
    ]
    assert build_completed_stages(subjobs) == ["appendix", "trends"]
    assert build_completed_stages(subjobs, ["trends", "exec_summary", "appendix"]) == [
        "trends",
        "appendix",
    ]
    assert generated_section_numbers(subjobs) == [6, 11]
