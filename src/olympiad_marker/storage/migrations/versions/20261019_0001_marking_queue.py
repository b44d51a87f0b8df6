"""Marking queue baseline: schemes, jobs, per-part results and job events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "marking_schemes",
        sa.Column("scheme_id", sa.Integer(), nullable=False),
        sa.Column("paper_name", sa.String(), nullable=False),
        sa.Column("exam_duration", sa.String(), nullable=False),
        sa.Column("additional_instructions", sa.Text(), nullable=False),
        sa.Column("parts_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("scheme_id"),
    )

    op.create_table(
        "marking_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue_position", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("parts_json", sa.Text(), nullable=False),
        sa.Column("author_name", sa.String(), nullable=True),
        sa.Column("group_name", sa.String(), nullable=True),
        sa.Column("has_pages", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "ix_marking_jobs_queue_position",
        "marking_jobs",
        ["queue_position"],
        unique=True,
    )
    op.create_index("ix_marking_jobs_status", "marking_jobs", ["status"])
    op.create_index("ix_marking_jobs_failure_class", "marking_jobs", ["failure_class"])
    op.create_index("idx_marking_jobs_queue", "marking_jobs", ["status", "queue_position"])

    op.create_table(
        "marking_results",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("part_index", sa.Integer(), nullable=False),
        sa.Column("part_id", sa.String(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["marking_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id", "part_index"),
    )

    op.create_table(
        "marking_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["marking_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_marking_job_events_event_type", "marking_job_events", ["event_type"])
    op.create_index(
        "idx_marking_job_events_job_time",
        "marking_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_marking_job_events_job_time", table_name="marking_job_events")
    op.drop_index("ix_marking_job_events_event_type", table_name="marking_job_events")
    op.drop_table("marking_job_events")
    op.drop_table("marking_results")
    op.drop_index("idx_marking_jobs_queue", table_name="marking_jobs")
    op.drop_index("ix_marking_jobs_failure_class", table_name="marking_jobs")
    op.drop_index("ix_marking_jobs_status", table_name="marking_jobs")
    op.drop_index("ix_marking_jobs_queue_position", table_name="marking_jobs")
    op.drop_table("marking_jobs")
    op.drop_table("marking_schemes")
