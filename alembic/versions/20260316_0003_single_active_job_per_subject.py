"""Enforce a single queued or running job per user and subject."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260316_0003"
down_revision = "20260309_0002"
branch_labels = None
depends_on = None

_DUPLICATE_ACTIVE_JOBS = """
    SELECT job_id FROM (
        SELECT
            job_id,
            ROW_NUMBER() OVER (
                PARTITION BY user_id, normalized_subject
                ORDER BY status = 'running' DESC, queued_at ASC, id ASC
            ) AS rn
        FROM research_jobs
        WHERE status IN ('queued', 'running')
    )
    WHERE rn > 1
"""


def upgrade() -> None:
    # Keep the running (else the oldest queued) job per subject, cancel the rest.
    op.execute(
        sa.text(
            f"""
            UPDATE research_subjobs
            SET
                status = 'cancelled',
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                updated_at = CURRENT_TIMESTAMP
            WHERE status IN ('pending', 'running')
              AND job_id IN ({_DUPLICATE_ACTIVE_JOBS})
            """,
        ),
    )
    op.execute(
        sa.text(
            f"""
            UPDATE research_jobs
            SET
                status = 'cancelled',
                current_stage = NULL,
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                updated_at = CURRENT_TIMESTAMP,
                error_summary = COALESCE(
                    error_summary,
                    'Auto-cancelled during migration: duplicate active job.'
                )
            WHERE job_id IN ({_DUPLICATE_ACTIVE_JOBS})
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_research_jobs_scope_subject_active
            ON research_jobs (user_id, normalized_subject)
            WHERE status IN ('queued', 'running')
            """,
        ),
    )


def downgrade() -> None:
    op.execute(
        sa.text(
            "DROP INDEX IF EXISTS uq_research_jobs_scope_subject_active",
        ),
    )
