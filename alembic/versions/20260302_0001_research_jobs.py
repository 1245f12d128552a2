"""Create report job, stage subjob and job event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260302_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "research_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("subject_name", sa.String(), nullable=False),
        sa.Column("normalized_subject", sa.String(), nullable=False),
        sa.Column("geography", sa.String(), nullable=False),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("report_type", sa.String(), nullable=False),
        sa.Column("visibility_scope", sa.String(), nullable=False),
        sa.Column("selected_sections_json", sa.Text(), nullable=False),
        sa.Column("focus_areas_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_stage", sa.String(), nullable=True),
        sa.Column("progress", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("rerun_of_job_id", sa.String(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index(
        "idx_research_jobs_status_queue",
        "research_jobs",
        ["status", "queued_at", "id"],
        unique=False,
    )
    op.create_index(
        "idx_research_jobs_scope_subject",
        "research_jobs",
        ["user_id", "normalized_subject"],
        unique=False,
    )
    op.create_index(
        "idx_research_jobs_scope_created",
        "research_jobs",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "research_subjobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subjob_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["research_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subjob_id"),
        sa.UniqueConstraint("job_id", "stage", name="uq_research_subjobs_job_stage"),
    )
    op.create_index(
        "idx_research_subjobs_job_status",
        "research_subjobs",
        ["job_id", "status"],
        unique=False,
    )

    op.create_table(
        "research_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["research_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_research_job_events_job_time",
        "research_job_events",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_research_job_events_job_time", table_name="research_job_events")
    op.drop_table("research_job_events")
    op.drop_index("idx_research_subjobs_job_status", table_name="research_subjobs")
    op.drop_table("research_subjobs")
    op.drop_index("idx_research_jobs_scope_created", table_name="research_jobs")
    op.drop_index("idx_research_jobs_scope_subject", table_name="research_jobs")
    op.drop_index("idx_research_jobs_status_queue", table_name="research_jobs")
    op.drop_table("research_jobs")
