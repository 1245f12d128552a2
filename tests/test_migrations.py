from pathlib import Path

import allure
from sqlalchemy import inspect, text

from research_reports.reports.repository import ReportRepository
from research_reports.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Report Jobs"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ReportRepository(tmp_path / "migrations.db")
    assert current_revision(repository.engine) is None

    repository.init_schema()

    assert current_revision(repository.engine) == "20260316_0003"
    with repository.engine.connect() as connection:
        assert connection.execute(text("PRAGMA foreign_keys")).scalar_one() == 1

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "research_jobs",
        "research_subjobs",
        "research_job_events",
        "bug_reports",
    } <= tables
    active_index = {
        index["name"]: index for index in inspect(repository.engine).get_indexes("research_jobs")
    }["uq_research_jobs_scope_subject_active"]
    assert active_index["unique"]
    assert active_index["column_names"] == ["user_id", "normalized_subject"]

    # Running migrations again is a no-op.
    repository.init_schema()
    assert current_revision(repository.engine) == "20260316_0003"
    repository.close()
