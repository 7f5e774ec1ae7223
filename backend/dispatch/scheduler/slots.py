"""Static time-slot table: 9am / noon / 7pm Eastern."""

import enum
from dataclasses import dataclass
from types import MappingProxyType

# Newest content older than this makes the corpus stale regardless of counts
STALE_CEILING_MINUTES = 120


class TimeSlot(enum.StrEnum):
    MORNING = "morning"
    NOON = "noon"
    EVENING = "evening"


@dataclass(frozen=True)
class SlotConfig:
    slot: TimeSlot
    display_name: str
    hour_et: int
    cron_utc: str
    notification_type: str
    content_window_hours: int
    min_fresh_events: int
    allow_stale_fallback: bool
    description: str

    @property
    def job_name(self) -> str:
        return f"email-timeslot-{self.slot.value}"


TIME_SLOT_CONFIG = MappingProxyType(
    {
        TimeSlot.MORNING: SlotConfig(
            slot=TimeSlot.MORNING,
            display_name="Morning Briefing",
            hour_et=9,
            cron_utc="0 14 * * *",
            notification_type="morning_briefing",
            content_window_hours=12,  # since 9pm the night before
            min_fresh_events=5,
            allow_stale_fallback=True,
            description="Comprehensive daily digest with overnight news, weather, and today's events",
        ),
        TimeSlot.NOON: SlotConfig(
            slot=TimeSlot.NOON,
            display_name="Midday Pulse",
            hour_et=12,
            cron_utc="0 17 * * *",
            notification_type="midday_pulse",
            content_window_hours=4,  # since the morning send
            min_fresh_events=2,
            allow_stale_fallback=False,
            description="Breaking alerts, transit updates, and midday news brief",
        ),
        TimeSlot.EVENING: SlotConfig(
            slot=TimeSlot.EVENING,
            display_name="Evening Wind-Down",
            hour_et=19,
            cron_utc="0 0 * * *",
            notification_type="evening_winddown",
            content_window_hours=8,  # since noon
            min_fresh_events=3,
            allow_stale_fallback=False,
            description="Day-ahead preview, parking reminders, and tomorrow planning",
        ),
    }
)


def parse_slot(value: str | None) -> TimeSlot | None:
    try:
        return TimeSlot((value or "").strip().lower())
    except ValueError:
        return None
