"""Initial schema: subscribers, delivery preferences and the content tables.

Revision ID: 001
Revises: None
Create Date: 2026-01-31
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscribers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("tier", sa.Enum("free", "premium", name="subscriber_tier"), nullable=False, server_default="free"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscribers_email", "subscribers", ["email"])

    op.create_table(
        "delivery_preferences",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscriber_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("morning_enabled", sa.Boolean(), nullable=True),
        sa.Column("noon_enabled", sa.Boolean(), nullable=True),
        sa.Column("evening_enabled", sa.Boolean(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "alert_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("module", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("body", sa.Text(), server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_alert_events_created", "alert_events", ["created_at"])
    op.create_index("idx_alert_events_module", "alert_events", ["module"])

    op.create_table(
        "city_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("venue", sa.String(255), server_default=""),
        sa.Column("neighborhood", sa.String(255), server_default=""),
        sa.Column("url", sa.String(500), server_default=""),
        sa.Column("source_name", sa.String(255), server_default=""),
        sa.Column("score", sa.Integer(), server_default="0"),
        sa.Column("status", sa.String(20), server_default="auto"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_city_events_starts_at", "city_events", ["starts_at"])

    op.create_table(
        "news_articles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("summary", sa.Text(), server_default=""),
        sa.Column("url", sa.String(500), server_default=""),
        sa.Column("source", sa.String(255), server_default=""),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("curated_for", sa.Date(), nullable=True),
        sa.Column("is_selected", sa.Boolean(), server_default=sa.false()),
    )
    op.create_index("ix_news_articles_curated_for", "news_articles", ["curated_for"])


def downgrade() -> None:
    op.drop_index("ix_news_articles_curated_for", table_name="news_articles")
    op.drop_table("news_articles")
    op.drop_index("ix_city_events_starts_at", table_name="city_events")
    op.drop_table("city_events")
    op.drop_index("idx_alert_events_module", table_name="alert_events")
    op.drop_index("idx_alert_events_created", table_name="alert_events")
    op.drop_table("alert_events")
    op.drop_table("delivery_preferences")
    op.drop_index("ix_subscribers_email", table_name="subscribers")
    op.drop_table("subscribers")
    sa.Enum(name="subscriber_tier").drop(op.get_bind(), checkfirst=True)
