from __future__ import annotations

import threading

import allure

from research_reports.reports.bug_reports import (
    BugReporter,
    StageFailure,
    build_bug_report,
    classify_error_category,
    classify_severity,
    compute_fingerprint,
    normalize_error_message,
    sanitize_error_context,
)
from research_reports.reports.models import BugCategory, BugSeverity
from research_reports.reports.stages import StageId

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("Bug Reports"),
]


def test_category_classifier_first_match_wins():
    assert classify_error_category("HTTP 429 Too Many Requests") is BugCategory.RATE_LIMIT
    assert classify_error_category("Internal Server Error") is BugCategory.SERVER_ERROR
    assert classify_error_category("Unexpected token in JSON") is BugCategory.PARSE_ERROR
    assert classify_error_category("Model returned empty section") is BugCategory.CONTENT_ERROR
    assert classify_error_category("socket hang up") is BugCategory.TIMEOUT
    assert classify_error_category("something odd") is BugCategory.UNKNOWN
    # Rate limit is checked before parse errors.
    assert classify_error_category("rate limit while parsing json") is BugCategory.RATE_LIMIT


def test_root_stage_failures_are_critical():
    assert classify_severity("foundation") is BugSeverity.CRITICAL
    assert classify_severity(StageId.FOUNDATION.value) is BugSeverity.CRITICAL
    assert classify_severity("trends") is BugSeverity.ERROR


def test_fingerprint_ignores_ids_timestamps_and_numbers():
    first = compute_fingerprint(
        "trends",
        "timeout",
        "Job 3f2b8c1e-1a2b-4c3d-8e9f-0123456789ab timed out at 2024-05-01T10:00:00Z after 30s",
    )
    second = compute_fingerprint(
        "trends",
        "timeout",
        "job 99999999-aaaa-bbbb-cccc-dddddddddddd TIMED OUT at 2025-12-31T23:59:59.123Z after 45s",
    )
    assert first == second
    assert len(first) == 16
    assert compute_fingerprint("appendix", "timeout", "x") != compute_fingerprint(
        "trends",
        "timeout",
        "x",
    )
    assert compute_fingerprint("trends", "unknown", "x") != compute_fingerprint(
        "trends",
        "timeout",
        "x",
    )


def test_normalize_error_message():
    assert normalize_error_message("  Retry 3 of 5  ") == "retry <n> of <n>"


def test_sanitized_context_truncates_snippet_and_omits_empty_lists():
    context = sanitize_error_context(
        raw_content="x" * 2000,
        dependencies=[],
        selected_sections=["trends"],
        focus_areas=[],
    )
    assert len(context["raw_content_snippet"]) == 1000
    assert context["selected_sections"] == ["trends"]
    assert "dependencies" not in context
    assert "focus_areas" not in context
    assert sanitize_error_context(raw_content=None) == {}


def test_build_bug_report_truncates_and_describes():
    report = build_bug_report(
        StageFailure(
            stage=StageId.TRENDS,
            error="E" * 6000,
            subject_name="Acme Corp",
            attempts=3,
            max_attempts=3,
            job_id="job-1",
        ),
    )
    assert report.title == "[trends] unknown failure for Acme Corp"
    assert len(report.error_message) == 5000
    assert report.error_stack is None
    assert report.description.splitlines()[0] == (
        'Stage "trends" permanently failed after 3/3 attempts.'
    )
    assert report.severity is BugSeverity.ERROR


def test_build_bug_report_keeps_exception_stack():
    try:
        raise RuntimeError("upstream 503 service unavailable")
    except RuntimeError as error:
        failure = StageFailure(
            stage=StageId.FOUNDATION,
            error=error,
            subject_name="Acme Corp",
            attempts=1,
            max_attempts=1,
        )
    report = build_bug_report(failure)
    assert report.category is BugCategory.SERVER_ERROR
    assert report.severity is BugSeverity.CRITICAL
    assert report.error_stack is not None
    assert "RuntimeError" in report.error_stack


class _BrokenSink:
    def add_bug_report(self, report):
        raise RuntimeError("database is locked")


class _MemorySink:
    def __init__(self) -> None:
        self.reports = []
        self.lock = threading.Lock()

    def add_bug_report(self, report):
        with self.lock:
            self.reports.append(report)
        return _View(report)


class _View:
    def __init__(self, report) -> None:
        self.bug_report_id = "bug-1"
        self.stage = report.stage.value
        self.category = report.category
        self.error_fingerprint = report.error_fingerprint


def test_reporter_swallows_sink_errors(caplog):
    reporter = BugReporter(sink=_BrokenSink())
    failure = StageFailure(
        stage=StageId.TRENDS,
        error="boom",
        subject_name="Acme",
        attempts=1,
        max_attempts=1,
    )
    assert reporter.report(failure) is None
    assert "Failed to record bug report" in caplog.text


def test_detached_reports_are_joined_by_wait_idle():
    sink = _MemorySink()
    reporter = BugReporter(sink=sink)
    for stage in (StageId.TRENDS, StageId.APPENDIX):
        thread = reporter.report_detached(
            StageFailure(
                stage=stage,
                error="boom",
                subject_name="Acme",
                attempts=1,
                max_attempts=1,
            ),
        )
        assert thread.daemon
        assert thread.name == f"bug-report-{stage.value}"
    assert reporter.wait_idle(timeout=5)
    assert sorted(report.stage.value for report in sink.reports) == ["appendix", "trends"]
