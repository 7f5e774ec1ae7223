"""Content freshness gate for time-slot sends."""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..database.base import as_utc, utcnow
from .models import AlertEvent
from .slots import STALE_CEILING_MINUTES, SlotConfig


class DataQuality(enum.StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class ContentFreshness:
    total_events: int
    events_in_window: int
    newest_event_age_minutes: int | None  # None when there is no content at all
    data_quality: DataQuality

    @property
    def has_fresh_data(self) -> bool:
        return self.data_quality == DataQuality.FRESH

    def to_dict(self) -> dict:
        return {
            "hasFreshData": self.has_fresh_data,
            "totalEvents": self.total_events,
            "eventsInWindow": self.events_in_window,
            "newestEventAgeMinutes": self.newest_event_age_minutes,
            "dataQuality": self.data_quality.value,
        }


def classify_freshness(
    events_in_window: int,
    newest_event_age_minutes: int | None,
    min_events: int,
    stale_ceiling_minutes: int = STALE_CEILING_MINUTES,
) -> DataQuality:
    if newest_event_age_minutes is None or newest_event_age_minutes > stale_ceiling_minutes:
        return DataQuality.STALE
    if events_in_window < min_events:
        return DataQuality.INSUFFICIENT
    return DataQuality.FRESH


def check_content_freshness(db: Session, config: SlotConfig, now: datetime | None = None) -> ContentFreshness:
    """Count live alerts inside the slot window and age the newest alert overall."""
    now = now or utcnow()
    window_start = now - timedelta(hours=config.content_window_hours)

    total_events = db.query(func.count(AlertEvent.id)).scalar() or 0
    events_in_window = (
        db.query(func.count(AlertEvent.id))
        .filter(
            AlertEvent.created_at >= window_start,
            AlertEvent.created_at <= now,
            or_(AlertEvent.expires_at.is_(None), AlertEvent.expires_at >= now),
        )
        .scalar()
        or 0
    )
    newest = db.query(func.max(AlertEvent.created_at)).scalar()

    newest_age = None
    if newest is not None:
        newest_age = int((now - as_utc(newest)).total_seconds() // 60)

    return ContentFreshness(
        total_events=total_events,
        events_in_window=events_in_window,
        newest_event_age_minutes=newest_age,
        data_quality=classify_freshness(events_in_window, newest_age, config.min_fresh_events),
    )
