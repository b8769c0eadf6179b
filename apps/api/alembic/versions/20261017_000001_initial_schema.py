"""create site health schema

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "audit_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_links", sa.Integer(), nullable=False),
        sa.Column("broken_links", sa.Integer(), nullable=False),
        sa.Column("corrected_links", sa.Integer(), nullable=False),
        sa.Column("seo_score", sa.Float(), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False),
        sa.Column("report_json", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_runs_job_id"), "audit_runs", ["job_id"], unique=False)
    op.create_index(op.f("ix_audit_runs_started_at"), "audit_runs", ["started_at"], unique=False)

    op.create_table(
        "resource_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("requested_url", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_resource_requests_requested_url"), "resource_requests", ["requested_url"], unique=False)
    op.create_index(op.f("ix_resource_requests_status"), "resource_requests", ["status"], unique=False)
    op.create_index(op.f("ix_resource_requests_created_at"), "resource_requests", ["created_at"], unique=False)

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_queue_jobs_kind"), "queue_jobs", ["kind"], unique=False)
    op.create_index(op.f("ix_queue_jobs_state"), "queue_jobs", ["state"], unique=False)
    op.create_index(op.f("ix_queue_jobs_enqueued_at"), "queue_jobs", ["enqueued_at"], unique=False)
    op.create_index(
        "uq_queue_jobs_single_running",
        "queue_jobs",
        ["state"],
        unique=True,
        postgresql_where=sa.text("state = 'running'"),
        sqlite_where=sa.text("state = 'running'"),
    )
    op.create_index(
        "uq_queue_jobs_active_kind",
        "queue_jobs",
        ["kind"],
        unique=True,
        postgresql_where=sa.text("state IN ('pending', 'running')"),
        sqlite_where=sa.text("state IN ('pending', 'running')"),
    )

    op.create_table(
        "alert_fire_records",
        sa.Column("threshold_key", sa.String(), nullable=False),
        sa.Column("last_fired_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("threshold_key"),
    )

    op.create_table(
        "usage_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invocations", sa.Integer(), nullable=False),
        sa.Column("compute_hours", sa.Float(), nullable=False),
        sa.Column("cron_runs", sa.Integer(), nullable=False),
        sa.Column("cron_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_usage_snapshots_timestamp"), "usage_snapshots", ["timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_usage_snapshots_timestamp"), table_name="usage_snapshots")
    op.drop_table("usage_snapshots")
    op.drop_table("alert_fire_records")
    op.drop_index("uq_queue_jobs_active_kind", table_name="queue_jobs")
    op.drop_index("uq_queue_jobs_single_running", table_name="queue_jobs")
    op.drop_index(op.f("ix_queue_jobs_enqueued_at"), table_name="queue_jobs")
    op.drop_index(op.f("ix_queue_jobs_state"), table_name="queue_jobs")
    op.drop_index(op.f("ix_queue_jobs_kind"), table_name="queue_jobs")
    op.drop_table("queue_jobs")
    op.drop_index(op.f("ix_resource_requests_created_at"), table_name="resource_requests")
    op.drop_index(op.f("ix_resource_requests_status"), table_name="resource_requests")
    op.drop_index(op.f("ix_resource_requests_requested_url"), table_name="resource_requests")
    op.drop_table("resource_requests")
    op.drop_index(op.f("ix_audit_runs_started_at"), table_name="audit_runs")
    op.drop_index(op.f("ix_audit_runs_job_id"), table_name="audit_runs")
    op.drop_table("audit_runs")
