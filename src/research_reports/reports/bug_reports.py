"""Bug reports for permanently failed stages.

Classification, fingerprinting and context sanitization are pure functions.
``BugReporter`` persists reports off the scheduler's critical path: a failure
to write a report is logged and never propagates to the pipeline.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
import traceback
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from research_reports.reports.models import (
    BugCategory,
    BugReportView,
    BugReportWrite,
    BugSeverity,
)
from research_reports.reports.stages import ROOT_STAGE, StageId

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_CHARS = 5_000
ERROR_STACK_MAX_CHARS = 10_000
DESCRIPTION_ERROR_MAX_CHARS = 500
RAW_CONTENT_SNIPPET_MAX_CHARS = 1_000

_RATE_LIMIT_PATTERNS: tuple[str, ...] = ("429", "rate limit", "rate_limit")
_SERVER_ERROR_PATTERNS: tuple[str, ...] = ("500", "internal server error", "502", "503")
_PARSE_ERROR_PATTERNS: tuple[str, ...] = ("json", "parse", "zod", "validation")
_CONTENT_ERROR_PATTERNS: tuple[str, ...] = ("empty", "no content", "missing required")
_TIMEOUT_PATTERNS: tuple[str, ...] = ("timeout", "etimedout", "econnreset", "socket hang up")

# First matching rule wins.
_CATEGORY_RULES: tuple[tuple[BugCategory, tuple[str, ...]], ...] = (
    (BugCategory.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (BugCategory.SERVER_ERROR, _SERVER_ERROR_PATTERNS),
    (BugCategory.PARSE_ERROR, _PARSE_ERROR_PATTERNS),
    (BugCategory.CONTENT_ERROR, _CONTENT_ERROR_PATTERNS),
    (BugCategory.TIMEOUT, _TIMEOUT_PATTERNS),
)

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[^\s]*")
_NUMBER_RE = re.compile(r"\d+")


def classify_error_category(message: str) -> BugCategory:
    """Map an error message to a coarse failure category."""

    haystack = message.lower()
    for category, patterns in _CATEGORY_RULES:
        if _first_match(haystack, patterns) is not None:
            return category
    return BugCategory.UNKNOWN


def classify_severity(stage: str) -> BugSeverity:
    """Foundation failures block every section, so they are critical."""

    return BugSeverity.CRITICAL if str(stage) == ROOT_STAGE.value else BugSeverity.ERROR


def normalize_error_message(message: str) -> str:
    normalized = _UUID_RE.sub("<UUID>", message)
    normalized = _TIMESTAMP_RE.sub("<TIMESTAMP>", normalized)
    normalized = _NUMBER_RE.sub("<N>", normalized)
    return normalized.strip().lower()


def compute_fingerprint(stage: str, category: str, message: str) -> str:
    """Stable 16-hex-char key grouping reports of the same underlying failure."""

    normalized = normalize_error_message(message)
    digest = hashlib.sha256(f"{stage}:{category}:{normalized}".encode()).hexdigest()
    return digest[:16]


def sanitize_error_context(
    *,
    raw_content: str | None,
    dependencies: Sequence[str] = (),
    selected_sections: Sequence[str] = (),
    focus_areas: Sequence[str] = (),
) -> dict[str, Any]:
    """Build the diagnostic context stored on a report.

    Only a truncated snippet of model output and non-empty stage lists are
    kept. Prompts and credentials never reach this function's output.
    """

    context: dict[str, Any] = {}
    if raw_content:
        context["raw_content_snippet"] = raw_content[:RAW_CONTENT_SNIPPET_MAX_CHARS]
    if dependencies:
        context["dependencies"] = [str(item) for item in dependencies]
    if selected_sections:
        context["selected_sections"] = [str(item) for item in selected_sections]
    if focus_areas:
        context["focus_areas"] = list(focus_areas)
    return context


@dataclass(slots=True)
class StageFailure:
    """Everything known about a stage at the moment it failed permanently."""

    stage: StageId
    error: BaseException | str
    subject_name: str
    attempts: int
    max_attempts: int
    job_id: str | None = None
    subjob_id: str | None = None
    report_type: str | None = None
    geography: str | None = None
    industry: str | None = None
    raw_content: str | None = None
    dependencies: Sequence[str] = ()
    selected_sections: Sequence[str] = ()
    focus_areas: Sequence[str] = ()


def build_bug_report(failure: StageFailure) -> BugReportWrite:
    message = _error_message(failure.error)
    stage = StageId(failure.stage).value
    category = classify_error_category(message)
    stack = _error_stack(failure.error)
    return BugReportWrite(
        severity=classify_severity(stage),
        category=category,
        title=f"[{stage}] {category.value} failure for {failure.subject_name}",
        description="\n".join(
            [
                f'Stage "{stage}" permanently failed after '
                f"{failure.attempts}/{failure.max_attempts} attempts.",
                f"Category: {category.value}",
                f"Error: {message[:DESCRIPTION_ERROR_MAX_CHARS]}",
            ],
        ),
        error_message=message[:ERROR_MESSAGE_MAX_CHARS],
        error_stack=stack[:ERROR_STACK_MAX_CHARS] if stack else None,
        error_fingerprint=compute_fingerprint(stage, category.value, message),
        stage=StageId(stage),
        subject_name=failure.subject_name,
        attempts=failure.attempts,
        max_attempts=failure.max_attempts,
        job_id=failure.job_id,
        subjob_id=failure.subjob_id,
        report_type=failure.report_type,
        geography=failure.geography,
        industry=failure.industry,
        error_context=sanitize_error_context(
            raw_content=failure.raw_content,
            dependencies=failure.dependencies,
            selected_sections=failure.selected_sections,
            focus_areas=failure.focus_areas,
        ),
    )


class BugReportSink(Protocol):
    """Storage accepted by ``BugReporter``."""

    def add_bug_report(self, report: BugReportWrite) -> BugReportView:
        """Persist one report."""


class BugReporter:
    """Writes bug reports, optionally on a detached thread."""

    def __init__(self, *, sink: BugReportSink) -> None:
        self.sink = sink
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def report(self, failure: StageFailure) -> BugReportView | None:
        """Persist a report; errors are logged and swallowed."""

        try:
            report = build_bug_report(failure)
            view = self.sink.add_bug_report(report)
        except Exception:
            logger.exception(
                "Failed to record bug report for job=%s stage=%s",
                failure.job_id,
                failure.stage.value,
            )
            return None
        logger.info(
            "Bug report %s recorded: stage=%s category=%s fingerprint=%s",
            view.bug_report_id,
            view.stage,
            view.category.value,
            view.error_fingerprint,
        )
        return view

    def report_detached(self, failure: StageFailure) -> threading.Thread:
        """Fire-and-forget variant used by the scheduler."""

        thread = threading.Thread(
            target=self.report,
            args=(failure,),
            daemon=True,
            name=f"bug-report-{StageId(failure.stage).value}",
        )
        with self._lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Join outstanding detached reports. Returns False on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        with self._lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            return not self._threads


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error or "Unknown error"
    return str(error) or type(error).__name__


def _error_stack(error: BaseException | str) -> str | None:
    if isinstance(error, str) or error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
