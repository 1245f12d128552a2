from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from research_reports.main import research_reports

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("CLI"),
]

_JOB_ID_RE = re.compile(r"job_id=([0-9a-f-]{36})")


@pytest.fixture()
def cli_env(monkeypatch) -> None:
    # Keep rich error panels on one line.
    monkeypatch.setenv("COLUMNS", "240")
    monkeypatch.setenv("RESEARCH_REPORTS_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("RESEARCH_REPORTS_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("RESEARCH_REPORTS_RETRY_MAX_SECONDS", "0")
    monkeypatch.delenv("RESEARCH_REPORTS_DEMO_FAIL_STAGES", raising=False)
    monkeypatch.delenv("RESEARCH_REPORTS_USER_ID", raising=False)


def _job_id(output: str) -> str:
    match = _JOB_ID_RE.search(output)
    assert match is not None, output
    return match.group(1)


def test_cli_create_wait_list_and_show(tmp_path: Path, cli_env) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    create = runner.invoke(
        research_reports,
        [
            "jobs",
            "create",
            "--db-path",
            str(db_path),
            "--subject",
            "acme corp",
            "--section",
            "exec_summary",
            "--wait",
        ],
    )
    assert create.exit_code == 0, create.output
    assert "Job enqueued:" in create.output
    assert "subject=Acme Corp" in create.output
    assert "Stages: foundation, financial_snapshot, company_overview, exec_summary" in (
        create.output
    )
    assert "Queue drained: processed=1 requeued=0" in create.output
    assert "Status: completed (stored=completed)" in create.output
    assert "Generated sections: 1, 2, 3" in create.output
    job_id = _job_id(create.output)

    listed = runner.invoke(research_reports, ["jobs", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1 of 1" in listed.output
    assert f"{job_id} subject=Acme Corp status=completed progress=100%" in listed.output

    shown = runner.invoke(research_reports, ["jobs", "show", "--db-path", str(db_path), job_id])
    assert shown.exit_code == 0, shown.output
    assert "stage=exec_summary status=completed attempts=0/3" in shown.output
    assert "enqueued" in shown.output
    assert "finished" in shown.output

    duplicate = runner.invoke(
        research_reports,
        ["jobs", "create", "--db-path", str(db_path), "--subject", "ACME CORP"],
    )
    assert duplicate.exit_code == 1
    assert "Use force to regenerate" in duplicate.output


def test_cli_failed_stage_files_bug_report(tmp_path: Path, cli_env, monkeypatch) -> None:
    db_path = tmp_path / "cli-bugs.db"
    monkeypatch.setenv("RESEARCH_REPORTS_DEMO_FAIL_STAGES", "trends")
    monkeypatch.setenv("RESEARCH_REPORTS_MAX_ATTEMPTS", "2")
    runner = CliRunner()

    create = runner.invoke(
        research_reports,
        [
            "jobs",
            "create",
            "--db-path",
            str(db_path),
            "--subject",
            "Acme",
            "--section",
            "trends",
            "--section",
            "appendix",
            "--wait",
        ],
    )
    assert create.exit_code == 0, create.output
    assert "Status: completed_with_errors (stored=completed)" in create.output
    assert "Error: Failed stages: trends" in create.output

    bugs = runner.invoke(research_reports, ["bugs", "list", "--db-path", str(db_path)])
    assert bugs.exit_code == 0, bugs.output
    assert "Bug reports: total=1 open=1 critical_unresolved=0" in bugs.output
    assert "[trends] unknown failure for Acme" in bugs.output

    patterns = runner.invoke(
        research_reports,
        [
            "bugs",
            "patterns",
            "--db-path",
            str(db_path),
            "--group-by-fingerprint",
            "--format",
            "json",
        ],
    )
    assert patterns.exit_code == 0, patterns.output
    payload = json.loads(patterns.output)
    assert payload["meta"]["totalBugs"] == 1
    assert payload["meta"]["uniquePatterns"] == 1
    assert "bugs" not in payload
    assert payload["patterns"][0]["stage"] == "trends"
    assert payload["patterns"][0]["count"] == 1

    rerun = runner.invoke(
        research_reports,
        ["jobs", "rerun", "--db-path", str(db_path), _job_id(create.output), "--only-failed"],
    )
    assert rerun.exit_code == 0, rerun.output
    assert "Rerun enqueued:" in rerun.output
    assert "Stages: foundation, trends" in rerun.output


def test_cli_cancel_and_position(tmp_path: Path, cli_env) -> None:
    db_path = tmp_path / "cli-queue.db"
    runner = CliRunner()

    first = runner.invoke(
        research_reports,
        ["jobs", "create", "--db-path", str(db_path), "--subject", "Alpha"],
    )
    second = runner.invoke(
        research_reports,
        ["jobs", "create", "--db-path", str(db_path), "--subject", "Beta"],
    )
    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    first_id = _job_id(first.output)
    second_id = _job_id(second.output)

    position = runner.invoke(
        research_reports,
        ["jobs", "position", "--db-path", str(db_path), second_id],
    )
    assert f"Job {second_id} queue_position=1" in position.output

    cancel = runner.invoke(research_reports, ["jobs", "cancel", "--db-path", str(db_path), first_id])
    assert cancel.exit_code == 0, cancel.output
    assert f"Job cancelled: {first_id} (cancelled stages=12)" in cancel.output

    again = runner.invoke(research_reports, ["jobs", "cancel", "--db-path", str(db_path), first_id])
    assert again.exit_code == 1
    assert "already cancelled" in again.output

    delete = runner.invoke(research_reports, ["jobs", "delete", "--db-path", str(db_path), "nope"])
    assert delete.exit_code == 1
    assert "Job not found: nope" in delete.output


def test_cli_stage_commands() -> None:
    runner = CliRunner()

    listed = runner.invoke(research_reports, ["stages", "list"])
    assert listed.exit_code == 0, listed.output
    assert "Stages: 12" in listed.output
    assert "foundation section=- depends_on=-" in listed.output

    expanded = runner.invoke(research_reports, ["stages", "expand", "exec_summary"])
    assert expanded.exit_code == 0, expanded.output
    assert expanded.output.split() == [
        "Expanded",
        "stages:",
        "4",
        "foundation",
        "financial_snapshot",
        "company_overview",
        "exec_summary",
    ]

    unknown = runner.invoke(research_reports, ["stages", "expand", "weather"])
    assert unknown.exit_code == 1
    assert "Unknown stage" in unknown.output


def test_cli_rejects_invalid_scheduler_config(tmp_path: Path, cli_env, monkeypatch) -> None:
    monkeypatch.setenv("RESEARCH_REPORTS_MAX_ATTEMPTS", "0")
    runner = CliRunner()

    result = runner.invoke(
        research_reports,
        ["queue", "drain", "--db-path", str(tmp_path / "cli-config.db")],
    )
    assert result.exit_code == 1
    assert "RESEARCH_REPORTS_MAX_ATTEMPTS must be >= 1" in result.output
