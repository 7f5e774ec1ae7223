"""Time-slot email job: lease, freshness gate, eligibility, send loop, monitoring.

One invocation per (slot, cron tick). The lease keeps overlapping
invocations out; the outbox keeps a retried invocation from sending twice.
"""

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID

from sqlalchemy.orm import Session

from ..database.base import utcnow
from ..locks.service import acquire_lease, release_lease
from ..monitoring.service import JobResult, start_job
from ..notifications.transport import EmailMessage, EmailTransport, create_transport
from ..outbox.models import DeliveryStatus
from ..outbox.service import SendOutcome, send_tracked
from .content import SlotContent, build_slot_content, local_today, render_html, render_text
from .eligibility import SlotRecipient, get_users_for_slot
from .frequency import FrequencyCap, OutboxFrequencyCap
from .freshness import ContentFreshness, DataQuality, check_content_freshness
from .slots import TIME_SLOT_CONFIG, SlotConfig, TimeSlot

logger = logging.getLogger(__name__)

ContentBuilder = Callable[[Session, TimeSlot, UUID, datetime], SlotContent]


def should_run_time_slot(freshness: ContentFreshness, config: SlotConfig) -> tuple[bool, str | None]:
    """Decide whether the slot sends. Returns (run, skip_reason)."""
    if freshness.has_fresh_data:
        return True, None
    if config.allow_stale_fallback:
        logger.info("%s running on %s content (fallback allowed)", config.display_name, freshness.data_quality)
        return True, None
    if freshness.data_quality == DataQuality.INSUFFICIENT:
        return False, "insufficient_content"
    return False, "stale_content"


# ── Send loop ──────────────────────────────────────────────────────────


@dataclass
class SendLoopResult:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_reasons: Counter = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skipped_reasons[reason] += 1

    def fail(self, email: str, error: str | None) -> None:
        self.failed += 1
        self.errors.append(f"{email}: {error or 'unknown error'}")


def send_time_slot_emails(
    db: Session,
    slot: TimeSlot,
    users: Iterable[SlotRecipient],
    content_builder: ContentBuilder,
    frequency_cap: FrequencyCap,
    transport: EmailTransport,
    today: date,
    now: datetime | None = None,
) -> SendLoopResult:
    """Send the slot email to each user in order. Every user lands in exactly one bucket."""
    config = TIME_SLOT_CONFIG[slot]
    now = now or utcnow()
    result = SendLoopResult()

    for user in users:
        try:
            check = frequency_cap.check(db, user, config.notification_type, today)
            if not check.allowed:
                logger.debug("Frequency cap for %s: %s", user.email, check.reason)
                result.skip("frequency_cap")
                continue

            content = content_builder(db, slot, user.user_id, now)
            if not content.sections:
                result.skip("no_content")
                continue

            message = EmailMessage(
                to=user.email,
                subject=content.subject,
                text=render_text(slot, content),
                html=render_html(slot, content),
            )
            sent = send_tracked(
                db,
                message,
                config.notification_type,
                today,
                metadata={
                    "slot": slot.value,
                    "user_id": str(user.user_id),
                    "sections": [s.type.value for s in content.sections],
                },
                transport=transport,
            )
        except Exception as exc:
            db.rollback()
            logger.exception("Time-slot send to %s raised", user.email)
            result.fail(user.email, str(exc) or exc.__class__.__name__)
            continue

        if sent.outcome == SendOutcome.SENT:
            result.sent += 1
        elif sent.outcome == SendOutcome.ALREADY_SENT:
            result.skip("already_sent")
        elif sent.outcome == SendOutcome.IN_PROGRESS:
            previously_failed = sent.existing_status == DeliveryStatus.FAILED
            result.skip("previously_failed" if previously_failed else "in_progress")
        else:
            result.fail(user.email, sent.error)

    return result


# ── Orchestrator ───────────────────────────────────────────────────────


@dataclass
class SlotRunResult:
    success: bool
    slot: TimeSlot
    reason: str | None = None
    total_users: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_reasons: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    content_freshness: ContentFreshness | None = None
    processing_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "slot": self.slot.value,
            "reason": self.reason,
            "totalUsers": self.total_users,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "skippedReasons": dict(self.skipped_reasons),
            "errors": self.errors,
            "metadata": {
                "contentFreshness": self.content_freshness.to_dict() if self.content_freshness else None,
                "processingTimeMs": self.processing_time_ms,
            },
        }


def execute_time_slot_job(
    db: Session,
    slot: TimeSlot,
    force: bool = False,
    test_user_ids: Iterable[UUID] | None = None,
    transport: EmailTransport | None = None,
    frequency_cap: FrequencyCap | None = None,
    content_builder: ContentBuilder | None = None,
    now: datetime | None = None,
) -> SlotRunResult:
    """Run one time-slot job end to end.

    ``force`` bypasses the freshness gate only; the lease is always honoured.
    ``test_user_ids`` restricts the run to those users regardless of their
    slot preferences. Unhandled errors are recorded on the job run and
    re-raised after the lease is released.
    """
    config = TIME_SLOT_CONFIG[slot]
    started = time.monotonic()
    now = now or utcnow()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    token = acquire_lease(db, config.job_name)
    if token is None:
        return SlotRunResult(success=True, slot=slot, reason="lock_held", processing_time_ms=elapsed_ms())

    transport = transport or create_transport()
    try:
        handle = start_job(db, config.job_name, transport=transport)
        try:
            freshness = check_content_freshness(db, config, now)
            logger.info(
                "%s freshness: %s (%d in window, newest %s min)",
                config.display_name,
                freshness.data_quality,
                freshness.events_in_window,
                freshness.newest_event_age_minutes,
            )

            run, skip_reason = should_run_time_slot(freshness, config)
            if not run and not force:
                handle.success(JobResult(metadata={"skipped": skip_reason, "freshness": freshness.to_dict()}))
                return SlotRunResult(
                    success=True,
                    slot=slot,
                    reason=skip_reason,
                    content_freshness=freshness,
                    processing_time_ms=elapsed_ms(),
                )

            user_ids = list(test_user_ids) if test_user_ids else None
            users = get_users_for_slot(db, slot, force_all=user_ids is not None, user_ids=user_ids)
            logger.info("%s: %d eligible users", config.display_name, len(users))

            loop = send_time_slot_emails(
                db,
                slot,
                users,
                content_builder or build_slot_content,
                frequency_cap or OutboxFrequencyCap(now=now),
                transport,
                local_today(now),
                now=now,
            )
            handle.success(
                JobResult(
                    items_processed=loop.sent,
                    items_failed=loop.failed,
                    metadata={
                        "slot": slot.value,
                        "totalUsers": len(users),
                        "skipped": loop.skipped,
                        "skippedReasons": dict(loop.skipped_reasons),
                        "forced": force,
                    },
                )
            )
        except Exception as exc:
            db.rollback()
            handle.fail(exc)
            raise
    finally:
        release_lease(db, config.job_name, token)

    logger.info(
        "%s complete: %d sent, %d skipped, %d failed of %d",
        config.display_name,
        loop.sent,
        loop.skipped,
        loop.failed,
        len(users),
    )
    return SlotRunResult(
        success=True,
        slot=slot,
        total_users=len(users),
        sent=loop.sent,
        skipped=loop.skipped,
        failed=loop.failed,
        skipped_reasons=dict(loop.skipped_reasons),
        errors=loop.errors,
        content_freshness=freshness,
        processing_time_ms=elapsed_ms(),
    )
