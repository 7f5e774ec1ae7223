"""Subscribers, delivery preferences and the content tables the scheduler reads.

Ingestion writes these tables; the dispatch core only reads them.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..database.base import Base


class SubscriberTier(enum.StrEnum):
    FREE = "free"
    PREMIUM = "premium"


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    tier = Column(
        SQLEnum(SubscriberTier, name="subscriber_tier", values_callable=lambda e: [s.value for s in e]),
        nullable=False,
        default=SubscriberTier.FREE,
    )
    is_active = Column(Boolean, default=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )

    preference = relationship(
        "DeliveryPreference", back_populates="subscriber", uselist=False, cascade="all, delete-orphan"
    )


class DeliveryPreference(Base):
    """Explicit per-slot opt-ins. Absence of a row means tier defaults apply."""

    __tablename__ = "delivery_preferences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    morning_enabled = Column(Boolean, nullable=True, default=True)
    noon_enabled = Column(Boolean, nullable=True, default=False)
    evening_enabled = Column(Boolean, nullable=True, default=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    subscriber = relationship("Subscriber", back_populates="preference")


class AlertEvent(Base):
    """A city alert (transit, parking, emergency...) produced by ingestion."""

    __tablename__ = "alert_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    module = Column(String(50), nullable=False)  # transit / parking / safety / ...
    title = Column(String(500), nullable=False)
    body = Column(Text, default="")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_alert_events_created", "created_at"),
        Index("idx_alert_events_module", "module"),
    )


class CityEvent(Base):
    __tablename__ = "city_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(500), nullable=False)
    description = Column(Text, default="")
    starts_at = Column(DateTime(timezone=True), nullable=True, index=True)
    venue = Column(String(255), default="")
    neighborhood = Column(String(255), default="")
    url = Column(String(500), default="")
    source_name = Column(String(255), default="")
    score = Column(Integer, default=0)
    status = Column(String(20), default="auto")  # auto / published / hidden
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )


class NewsArticle(Base):
    __tablename__ = "news_articles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(500), nullable=False)
    summary = Column(Text, default="")
    url = Column(String(500), default="")
    source = Column(String(255), default="")
    published_at = Column(DateTime(timezone=True), nullable=False)
    curated_for = Column(Date, nullable=True, index=True)
    is_selected = Column(Boolean, default=False)
