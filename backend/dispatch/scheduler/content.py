"""Slot-specific content assembly and plain rendering of the resulting email.

Each slot mixes different sources:
- morning: breaking alerts, top stories, today's events, transit
- noon: alerts since the morning send, transit updates, developing stories
- evening: tomorrow's parking, tomorrow's events
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from html import escape
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..database.base import as_utc, utcnow
from .models import AlertEvent, CityEvent, NewsArticle
from .slots import TIME_SLOT_CONFIG, TimeSlot

_BREAKING_RE = re.compile(r"breaking|urgent|emergency|suspended", re.IGNORECASE)
_PUBLISHED_EVENT_STATUSES = ("auto", "published")


class SectionType(enum.StrEnum):
    BREAKING = "breaking"
    NEWS = "news"
    WEATHER = "weather"
    TRANSIT = "transit"
    PARKING = "parking"
    EVENTS = "events"
    DAY_AHEAD = "day_ahead"
    DEALS = "deals"


@dataclass
class ContentItem:
    id: str
    title: str
    timestamp: datetime | None
    source: str
    description: str = ""
    url: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class ContentSection:
    type: SectionType
    title: str
    priority: int  # display order only
    items: list[ContentItem]


@dataclass
class SlotContent:
    subject: str
    preheader: str
    sections: list[ContentSection]
    generated_at: datetime
    sources_used: list[str]


def local_now(now: datetime | None = None) -> datetime:
    return (now or utcnow()).astimezone(ZoneInfo(settings.timezone))


def local_today(now: datetime | None = None) -> date:
    return local_now(now).date()


def local_day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC bounds of a calendar day in the configured timezone."""
    start = datetime.combine(day, time.min, tzinfo=ZoneInfo(settings.timezone))
    return start.astimezone(UTC), (start + timedelta(days=1)).astimezone(UTC)


def _clip(text: str | None, limit: int) -> str:
    return (text or "")[:limit]


def _alert_item(alert: AlertEvent, limit: int, source: str | None = None) -> ContentItem:
    return ContentItem(
        id=str(alert.id),
        title=alert.title,
        description=_clip(alert.body, limit),
        timestamp=as_utc(alert.created_at),
        source=source or alert.module,
    )


def _event_item(event: CityEvent) -> ContentItem:
    return ContentItem(
        id=str(event.id),
        title=event.title,
        description=_clip(event.description, 150),
        url=event.url or "",
        timestamp=as_utc(event.starts_at or event.created_at),
        source=event.source_name or "CityPing",
        metadata={"venue": event.venue or None, "neighborhood": event.neighborhood or None},
    )


def _news_item(article: NewsArticle, limit: int) -> ContentItem:
    return ContentItem(
        id=str(article.id),
        title=article.title,
        description=_clip(article.summary, limit),
        url=article.url or "",
        timestamp=as_utc(article.published_at),
        source=article.source or "",
    )


def _live_alerts(db: Session, now: datetime, since: datetime | None = None, module: str | None = None, limit: int = 10):
    query = db.query(AlertEvent).filter(or_(AlertEvent.expires_at.is_(None), AlertEvent.expires_at >= now))
    if since is not None:
        query = query.filter(AlertEvent.created_at >= since)
    if module is not None:
        query = query.filter(AlertEvent.module == module)
    return query.order_by(AlertEvent.created_at.desc()).limit(limit).all()


def _events_on(db: Session, day: date, limit: int) -> list[CityEvent]:
    start, end = local_day_bounds(day)
    return (
        db.query(CityEvent)
        .filter(
            CityEvent.status.in_(_PUBLISHED_EVENT_STATUSES),
            CityEvent.starts_at >= start,
            CityEvent.starts_at < end,
        )
        .order_by(CityEvent.score.desc())
        .limit(limit)
        .all()
    )


def _sorted(sections: list[ContentSection]) -> list[ContentSection]:
    return sorted(sections, key=lambda s: s.priority, reverse=True)


def _build_morning(db: Session, now: datetime) -> SlotContent:
    today = local_today(now)
    alerts = _live_alerts(db, now, since=now - timedelta(hours=12), limit=10)
    events = _events_on(db, today, 8)
    articles = (
        db.query(NewsArticle)
        .filter(NewsArticle.is_selected == True, NewsArticle.curated_for == today)  # noqa: E712
        .order_by(NewsArticle.published_at.desc())
        .limit(5)
        .all()
    )

    sections = []
    breaking = [a for a in alerts if _BREAKING_RE.search(a.title)]
    if breaking:
        sections.append(
            ContentSection(SectionType.BREAKING, "Breaking Now", 100, [_alert_item(a, 200) for a in breaking])
        )
    if articles:
        sections.append(ContentSection(SectionType.NEWS, "Top Stories", 80, [_news_item(n, 150) for n in articles]))
    transit = [a for a in alerts if a.module == "transit"]
    if transit:
        sections.append(
            ContentSection(SectionType.TRANSIT, "Transit Now", 70, [_alert_item(a, 100, "MTA") for a in transit[:4]])
        )
    if events:
        sections.append(ContentSection(SectionType.EVENTS, "Today's Events", 60, [_event_item(e) for e in events]))

    preheader = f"{len(articles)} stories • {len(events)} events today"
    if breaking:
        preheader = f"{len(breaking)} breaking alerts • " + preheader
    return SlotContent(
        subject=f"CityPing Morning Briefing - {local_now(now):%A, %B} {today.day}",
        preheader=preheader,
        sections=_sorted(sections),
        generated_at=now,
        sources_used=["alert_events", "city_events", "news_articles"],
    )


def _build_noon(db: Session, now: datetime) -> SlotContent:
    since_morning = now - timedelta(hours=4)
    alerts = _live_alerts(db, now, since=since_morning, limit=8)
    articles = (
        db.query(NewsArticle)
        .filter(NewsArticle.is_selected == True, NewsArticle.published_at >= since_morning)  # noqa: E712
        .order_by(NewsArticle.published_at.desc())
        .limit(3)
        .all()
    )

    sections = []
    if alerts:
        sections.append(
            ContentSection(
                SectionType.BREAKING, "New Since This Morning", 100, [_alert_item(a, 150) for a in alerts]
            )
        )
    transit = [a for a in alerts if a.module == "transit"]
    if transit:
        sections.append(
            ContentSection(SectionType.TRANSIT, "Transit Updates", 80, [_alert_item(a, 100, "MTA") for a in transit[:4]])
        )
    if articles:
        sections.append(
            ContentSection(SectionType.NEWS, "Developing Stories", 60, [_news_item(n, 100) for n in articles])
        )

    today = local_today(now)
    return SlotContent(
        subject=f"CityPing Midday Pulse - {local_now(now):%A, %B} {today.day}",
        preheader=f"{len(alerts)} new alerts • {len(transit)} transit updates",
        sections=_sorted(sections),
        generated_at=now,
        sources_used=["alert_events", "news_articles"],
    )


def _build_evening(db: Session, now: datetime) -> SlotContent:
    tomorrow = local_today(now) + timedelta(days=1)
    parking = _live_alerts(db, now, module="parking", limit=5)
    events = _events_on(db, tomorrow, 6)

    sections = []
    if parking:
        sections.append(
            ContentSection(
                SectionType.PARKING,
                f"Tomorrow's Parking ({tomorrow:%A, %B} {tomorrow.day})",
                100,
                [_alert_item(a, 100, "NYC DOT") for a in parking],
            )
        )
    if events:
        sections.append(ContentSection(SectionType.DAY_AHEAD, "Tomorrow Preview", 80, [_event_item(e) for e in events]))

    preheader = f"{len(events)} events tomorrow"
    if parking:
        preheader = f"{len(parking)} parking updates • " + preheader
    return SlotContent(
        subject="CityPing Evening Wind-Down - Tomorrow's Prep",
        preheader=preheader,
        sections=_sorted(sections),
        generated_at=now,
        sources_used=["alert_events", "city_events"],
    )


_BUILDERS = {
    TimeSlot.MORNING: _build_morning,
    TimeSlot.NOON: _build_noon,
    TimeSlot.EVENING: _build_evening,
}


def build_slot_content(
    db: Session, slot: TimeSlot, user_id: UUID | None = None, now: datetime | None = None
) -> SlotContent:
    """Assemble the sections for ``slot``.

    ``user_id`` is accepted for per-user personalization; content is currently
    the same for every subscriber of a slot.
    """
    return _BUILDERS[slot](db, now or utcnow())


# ── Rendering ──────────────────────────────────────────────────────────


def render_text(slot: TimeSlot, content: SlotContent) -> str:
    lines = [content.subject, "", content.preheader, ""]
    for section in content.sections:
        lines += [section.title, "-" * len(section.title), ""]
        for item in section.items:
            lines.append(item.title)
            if item.description:
                lines.append(item.description)
            if item.url:
                lines.append(item.url)
            lines.append("")
    lines += ["---", f"CityPing {TIME_SLOT_CONFIG[slot].display_name} | https://cityping.net/preferences"]
    return "\n".join(lines)


def render_html(slot: TimeSlot, content: SlotContent) -> str:
    parts = [
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">",
        f"<title>{escape(content.subject)}</title></head>",
        '<body style="font-family:system-ui,sans-serif; max-width:600px; margin:0 auto; padding:20px;">',
        f"<h1>{escape(TIME_SLOT_CONFIG[slot].display_name)}</h1>",
        f'<p style="color:#666;">{escape(content.preheader)}</p>',
    ]
    for section in content.sections:
        parts.append(f'<section style="margin:24px 0;"><h2>{escape(section.title)}</h2>')
        for item in section.items:
            parts.append(f"<div><h3>{escape(item.title)}</h3>")
            if item.description:
                parts.append(f"<p>{escape(item.description)}</p>")
            if item.url:
                parts.append(f'<a href="{escape(item.url)}">Read more</a>')
            parts.append("</div>")
        parts.append("</section>")
    parts.append('<footer><p><a href="https://cityping.net/preferences">Manage preferences</a></p></footer>')
    parts.append("</body></html>")
    return "".join(parts)
