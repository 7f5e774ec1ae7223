"""Per-recipient frequency caps, counted from the delivery outbox."""

import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database.base import utcnow
from ..outbox.models import DeliveryRecord, DeliveryStatus
from ..outbox.store import normalize_recipient
from .content import local_day_bounds
from .eligibility import SlotRecipient


class MessagePriority(enum.IntEnum):
    LOW = 10
    ROUTINE = 30
    IMPORTANT = 50
    URGENT = 80
    CRITICAL = 100


NOTIFICATION_PRIORITY: dict[str, MessagePriority] = {
    "daily_digest": MessagePriority.IMPORTANT,
    "daily_pulse": MessagePriority.IMPORTANT,
    "weekly_digest": MessagePriority.IMPORTANT,
    "day_ahead": MessagePriority.IMPORTANT,
    "reminder": MessagePriority.URGENT,
    "monthly_recap": MessagePriority.ROUTINE,
    "welcome": MessagePriority.URGENT,
    "system": MessagePriority.CRITICAL,
    "morning_briefing": MessagePriority.IMPORTANT,
    "midday_pulse": MessagePriority.IMPORTANT,
    "evening_winddown": MessagePriority.IMPORTANT,
}


def get_priority(notification_type: str) -> MessagePriority:
    return NOTIFICATION_PRIORITY.get(notification_type, MessagePriority.ROUTINE)


@dataclass(frozen=True)
class FrequencyCheck:
    allowed: bool
    current_count: int
    limit: int
    reason: str | None = None


class FrequencyCap(Protocol):
    def check(self, db: Session, user: SlotRecipient, notification_type: str, day: date) -> FrequencyCheck: ...


class OutboxFrequencyCap:
    """Daily email cap plus a same-type cooldown. Urgent and critical types bypass both."""

    def __init__(self, emails_per_day: int = 3, same_type_cooldown_hours: int = 4, now: datetime | None = None) -> None:
        self.emails_per_day = emails_per_day
        self.same_type_cooldown = timedelta(hours=same_type_cooldown_hours)
        self._now = now

    def check(self, db: Session, user: SlotRecipient, notification_type: str, day: date) -> FrequencyCheck:
        recipient = normalize_recipient(user.email)
        start, end = local_day_bounds(day)

        sent_today = (
            db.query(func.count(DeliveryRecord.id))
            .filter(
                DeliveryRecord.recipient == recipient,
                DeliveryRecord.status == DeliveryStatus.SENT,
                DeliveryRecord.sent_at >= start,
                DeliveryRecord.sent_at < end,
            )
            .scalar()
            or 0
        )

        if get_priority(notification_type) >= MessagePriority.URGENT:
            return FrequencyCheck(True, sent_today, self.emails_per_day)

        if sent_today >= self.emails_per_day:
            return FrequencyCheck(
                False,
                sent_today,
                self.emails_per_day,
                reason=f"Daily email limit reached ({sent_today}/{self.emails_per_day})",
            )

        cutoff = (self._now or utcnow()) - self.same_type_cooldown
        recent_same_type = (
            db.query(DeliveryRecord.id)
            .filter(
                DeliveryRecord.recipient == recipient,
                DeliveryRecord.notification_type == notification_type,
                DeliveryRecord.status == DeliveryStatus.SENT,
                DeliveryRecord.sent_at >= cutoff,
            )
            .first()
        )
        if recent_same_type is not None:
            return FrequencyCheck(
                False,
                sent_today,
                self.emails_per_day,
                reason="Similar email sent recently (cooldown active)",
            )

        return FrequencyCheck(True, sent_today, self.emails_per_day)
