"""Delivery record model: one row per attempted send."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, Date, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID

from ..database.base import Base


class DeliveryStatus(enum.StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryRecord(Base):
    """Outbox row keyed by (recipient, notification_type, target_date).

    target_date is the logical occasion being notified about, not the send time.
    """

    __tablename__ = "delivery_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recipient = Column(String(255), nullable=False)
    notification_type = Column(String(50), nullable=False)
    target_date = Column(Date, nullable=False)
    status = Column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=lambda e: [s.value for s in e]),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    subject = Column(String(500), default="")
    body_text = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, default=dict)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("recipient", "notification_type", "target_date", name="uq_delivery_natural_key"),
        Index("idx_delivery_status_target", "status", "target_date"),
        Index("idx_delivery_type_target", "notification_type", "target_date"),
    )
