"""Add delivery outbox, job leases, job run log and alert state.

Revision ID: 002
Revises: 001
Create Date: 2026-01-31
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "delivery_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", name="delivery_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("subject", sa.String(500), server_default=""),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("recipient", "notification_type", "target_date", name="uq_delivery_natural_key"),
    )
    op.create_index("idx_delivery_status_target", "delivery_records", ["status", "target_date"])
    op.create_index("idx_delivery_type_target", "delivery_records", ["notification_type", "target_date"])

    op.create_table(
        "job_leases",
        sa.Column("job_name", sa.String(100), primary_key=True),
        sa.Column("lease_token", sa.String(64), nullable=False, unique=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_job_leases_expires_at", "job_leases", ["expires_at"])

    op.create_table(
        "job_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column(
            "status",
            sa.Enum("running", "success", "failed", "timeout", name="job_run_status"),
            nullable=False,
            server_default="running",
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=True),
        sa.Column("items_failed", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("idx_job_runs_name_started", "job_runs", ["job_name", "started_at"])
    op.create_index("idx_job_runs_status", "job_runs", ["status"])

    op.create_table(
        "job_alert_states",
        sa.Column("job_name", sa.String(100), primary_key=True),
        sa.Column("last_alerted_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("job_alert_states")
    op.drop_index("idx_job_runs_status", table_name="job_runs")
    op.drop_index("idx_job_runs_name_started", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_index("ix_job_leases_expires_at", table_name="job_leases")
    op.drop_table("job_leases")
    op.drop_index("idx_delivery_type_target", table_name="delivery_records")
    op.drop_index("idx_delivery_status_target", table_name="delivery_records")
    op.drop_table("delivery_records")
    sa.Enum(name="job_run_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="delivery_status").drop(op.get_bind(), checkfirst=True)
