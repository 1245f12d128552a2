"""Add bug report table for permanent stage failures."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260309_0002"
down_revision = "20260302_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bug_reports",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bug_report_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("error_fingerprint", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("subjob_id", sa.String(), nullable=True),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("subject_name", sa.String(), nullable=False),
        sa.Column("report_type", sa.String(), nullable=True),
        sa.Column("geography", sa.String(), nullable=True),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("error_context_json", sa.Text(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bug_report_id"),
    )
    op.create_index(
        "idx_bug_reports_fingerprint",
        "bug_reports",
        ["error_fingerprint"],
        unique=False,
    )
    op.create_index(
        "idx_bug_reports_status_time",
        "bug_reports",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_bug_reports_severity_time",
        "bug_reports",
        ["severity", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_bug_reports_severity_time", table_name="bug_reports")
    op.drop_index("idx_bug_reports_status_time", table_name="bug_reports")
    op.drop_index("idx_bug_reports_fingerprint", table_name="bug_reports")
    op.drop_table("bug_reports")
