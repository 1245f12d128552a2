"""Bug report triage rules and failure pattern digest."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from research_reports.errors import ReportRequestError
from research_reports.reports.models import (
    BugCategory,
    BugPattern,
    BugPatternReport,
    BugReportView,
    BugSeverity,
    BugStatus,
)

DEFAULT_PATTERN_WINDOW_DAYS = 7
DEFAULT_PATTERN_LIMIT = 50
MAX_PATTERN_LIMIT = 200
LATEST_ERROR_MAX_CHARS = 200
DEFAULT_RESOLVER = "admin"

SUGGESTED_ACTIONS: dict[BugCategory, str] = {
    BugCategory.RATE_LIMIT: "Consider increasing retry delays or reducing parallel requests",
    BugCategory.SERVER_ERROR: "Check upstream API status; may be transient",
    BugCategory.PARSE_ERROR: "Review prompt output format instructions; check output schemas",
    BugCategory.CONTENT_ERROR: "Review prompt instructions for completeness requirements",
    BugCategory.TIMEOUT: "Consider increasing timeouts or breaking into smaller requests",
    BugCategory.UNKNOWN: "Manual investigation required",
}


def parse_bug_status(value: str) -> BugStatus:
    try:
        return BugStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in BugStatus)
        raise ReportRequestError(f"Invalid status. Must be one of: {allowed}") from error


def parse_bug_severity(value: str) -> BugSeverity:
    try:
        return BugSeverity(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in BugSeverity)
        raise ReportRequestError(f"Invalid severity. Must be one of: {allowed}") from error


def parse_bug_category(value: str) -> BugCategory:
    try:
        return BugCategory(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in BugCategory)
        raise ReportRequestError(f"Invalid category. Must be one of: {allowed}") from error


def clamp_pattern_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return DEFAULT_PATTERN_LIMIT
    return min(limit, MAX_PATTERN_LIMIT)


def plan_bug_report_update(
    *,
    current_status: BugStatus,
    status: BugStatus | None,
    resolution_notes: str | None,
    actor: str | None,
    now: datetime,
) -> dict[str, Any]:
    """Column values for a triage update.

    Moving into ``resolved`` stamps the resolver; moving out of it clears the
    stamp. An update that changes nothing is rejected.
    """

    values: dict[str, Any] = {}
    if status is not None:
        values["status"] = status.value
        if status is BugStatus.RESOLVED and current_status is not BugStatus.RESOLVED:
            values["resolved_at"] = now
            values["resolved_by"] = actor or DEFAULT_RESOLVER
        if status is not BugStatus.RESOLVED and current_status is BugStatus.RESOLVED:
            values["resolved_at"] = None
            values["resolved_by"] = None
    if resolution_notes is not None:
        values["resolution_notes"] = resolution_notes
    if not values:
        raise ReportRequestError("No valid fields to update")
    return values


def build_pattern_report(
    *,
    bugs: Sequence[BugReportView],
    since: datetime,
    include_bugs: bool = True,
) -> BugPatternReport:
    """Group reports by fingerprint, most frequent first.

    ``bugs`` must be ordered newest first so each pattern carries its most
    recent error text.
    """

    patterns: dict[str, BugPattern] = {}
    for bug in bugs:
        existing = patterns.get(bug.error_fingerprint)
        if existing is not None:
            existing.count += 1
            continue
        patterns[bug.error_fingerprint] = BugPattern(
            fingerprint=bug.error_fingerprint,
            count=1,
            category=bug.category,
            stage=bug.stage,
            severity=bug.severity,
            latest_error=bug.error_message[:LATEST_ERROR_MAX_CHARS],
            latest_at=bug.created_at,
            suggested_action=SUGGESTED_ACTIONS.get(
                bug.category,
                SUGGESTED_ACTIONS[BugCategory.UNKNOWN],
            ),
        )

    ordered = sorted(patterns.values(), key=lambda pattern: pattern.count, reverse=True)
    return BugPatternReport(
        since=since,
        total_bugs=len(bugs),
        unique_patterns=len(ordered),
        critical_count=sum(1 for bug in bugs if bug.severity is BugSeverity.CRITICAL),
        open_count=sum(1 for bug in bugs if bug.status is BugStatus.OPEN),
        patterns=ordered,
        bugs=list(bugs) if include_bugs else None,
    )
