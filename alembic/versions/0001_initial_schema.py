"""Initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "cvs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("parsed_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_cvs_user_id", "cvs", ["user_id"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("url", sa.String(800), nullable=False),
        sa.Column("search_context", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_jobs_external_id", "jobs", ["external_id"], unique=True)

    op.create_table(
        "workflows",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("cv_id", sa.Integer(), sa.ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_workflows_user_id", "workflows", ["user_id"])

    op.create_table(
        "application_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(36),
            sa.ForeignKey("workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("cv_id", sa.Integer(), sa.ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("job_external_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_run_at", sa.DateTime(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_application_queue_status_next_run_at", "application_queue", ["status", "next_run_at"]
    )
    op.create_index("ix_application_queue_workflow_id", "application_queue", ["workflow_id"])
    op.create_index("ix_application_queue_user_id", "application_queue", ["user_id"])
    op.create_index("ix_application_queue_job_external_id", "application_queue", ["job_external_id"])

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("workflow_id", sa.String(36), nullable=True),
        sa.Column(
            "queue_item_id",
            sa.Integer(),
            sa.ForeignKey("application_queue.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("cv_id", sa.Integer(), sa.ForeignKey("cvs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("job_external_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("cover_letter", sa.Text(), nullable=False),
        sa.Column("response_data", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("resume_id", sa.String(255), nullable=True),
        sa.Column("negotiation_id", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_applications_user_id_created_at", "applications", ["user_id", "created_at"])
    op.create_index("ix_applications_workflow_id", "applications", ["workflow_id"])


def downgrade() -> None:
    op.drop_table("applications")
    op.drop_table("application_queue")
    op.drop_table("workflows")
    op.drop_table("jobs")
    op.drop_table("cvs")
