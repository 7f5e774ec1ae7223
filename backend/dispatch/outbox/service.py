"""Idempotent email delivery on top of the delivery outbox.

A pending record is written before the provider is called. The unique
(recipient, notification_type, target_date) key is the linearization point:
whoever creates the row owns the send, everyone else reads the existing
status and backs off.
"""

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database.base import utcnow
from ..notifications.transport import EmailMessage, EmailTransport, create_transport
from .models import DeliveryRecord, DeliveryStatus
from .store import UniqueConstraintViolation, create_record, find_by_key, normalize_recipient, update_status

logger = logging.getLogger(__name__)


class SendOutcome(enum.StrEnum):
    SENT = "sent"
    ALREADY_SENT = "already_sent"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


@dataclass
class SendResult:
    outcome: SendOutcome
    record_id: UUID | None = None
    error: str | None = None
    existing_status: DeliveryStatus | None = None

    @property
    def success(self) -> bool:
        return self.outcome in (SendOutcome.SENT, SendOutcome.ALREADY_SENT)


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def send_tracked(
    db: Session,
    message: EmailMessage,
    notification_type: str,
    target_date: date | datetime,
    metadata: dict | None = None,
    transport: EmailTransport | None = None,
) -> SendResult:
    """Send an email at most once per (recipient, notification_type, target_date).

    Provider errors are recorded on the delivery record and returned, never raised.
    """
    day = _as_date(target_date)
    recipient = normalize_recipient(message.to)

    try:
        record = create_record(
            db,
            recipient=recipient,
            notification_type=notification_type,
            target_date=day,
            subject=message.subject,
            body_text=message.text,
            body_html=message.html or None,
            metadata=metadata,
        )
    except UniqueConstraintViolation:
        existing = find_by_key(db, recipient, notification_type, day)
        if existing is None:
            # Conflicting row was removed by an operator between insert and read
            return SendResult(SendOutcome.IN_PROGRESS, error="Delivery record changed concurrently")
        if existing.status == DeliveryStatus.SENT:
            logger.info("Skipping duplicate %s to %s for %s", notification_type, recipient, day.isoformat())
            return SendResult(SendOutcome.ALREADY_SENT, record_id=existing.id, existing_status=existing.status)

        logger.info("%s to %s for %s already %s", notification_type, recipient, day.isoformat(), existing.status)
        return SendResult(
            SendOutcome.IN_PROGRESS,
            record_id=existing.id,
            error=f"Delivery already {existing.status}",
            existing_status=existing.status,
        )

    record_id = record.id
    sender = transport or create_transport()
    try:
        provider_id = sender.send(message)
    except Exception as exc:
        error_message = str(exc) or exc.__class__.__name__
        update_status(db, record_id, DeliveryStatus.FAILED, error_message=error_message)
        logger.error("Failed to send %s to %s: %s", notification_type, recipient, error_message)
        return SendResult(SendOutcome.FAILED, record_id=record_id, error=error_message)

    update_status(db, record_id, DeliveryStatus.SENT, sent_at=utcnow(), provider_message_id=provider_id)
    return SendResult(SendOutcome.SENT, record_id=record_id)


@dataclass
class BatchSendResult:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def send_tracked_batch(
    db: Session,
    recipients: Iterable,
    build_message: Callable[[object], EmailMessage],
    notification_type: str,
    target_date: date | datetime,
    transport: EmailTransport | None = None,
) -> BatchSendResult:
    """Send one tracked email per recipient object (anything with ``email`` and ``id``)."""
    results = BatchSendResult()
    sender = transport or create_transport()

    for recipient in recipients:
        try:
            message = build_message(recipient)
            result = send_tracked(
                db,
                message,
                notification_type,
                target_date,
                metadata={"recipient_id": str(getattr(recipient, "id", "") or "")},
                transport=sender,
            )
        except Exception as exc:
            db.rollback()
            results.failed += 1
            results.errors.append(f"{recipient.email}: {exc}")
            continue

        if result.outcome == SendOutcome.SENT:
            results.sent += 1
        elif result.outcome == SendOutcome.ALREADY_SENT:
            results.skipped += 1
        else:
            results.failed += 1
            results.errors.append(f"{recipient.email}: {result.error}")

    return results


def was_sent(db: Session, recipient: str, notification_type: str, target_date: date | datetime) -> bool:
    existing = find_by_key(db, recipient, notification_type, _as_date(target_date))
    return existing is not None and existing.status == DeliveryStatus.SENT


def get_delivery_stats(db: Session, notification_type: str, start: date, end: date) -> dict:
    """Count records per status for a notification type over a target-date range (inclusive)."""
    rows = (
        db.query(DeliveryRecord.status, func.count(DeliveryRecord.id))
        .filter(
            DeliveryRecord.notification_type == notification_type,
            DeliveryRecord.target_date >= start,
            DeliveryRecord.target_date <= end,
        )
        .group_by(DeliveryRecord.status)
        .all()
    )
    counts = {DeliveryStatus(status).value: count for status, count in rows}
    return {
        "total": sum(counts.values()),
        "sent": counts.get("sent", 0),
        "failed": counts.get("failed", 0),
        "pending": counts.get("pending", 0),
    }


# ── Reconciliation ────────────────────────────────────────────────────


@dataclass
class ReconcileResult:
    examined: int = 0
    resent: int = 0
    marked_failed: int = 0


def reconcile_pending_deliveries(
    db: Session,
    grace_minutes: int,
    transport: EmailTransport | None = None,
    now: datetime | None = None,
) -> ReconcileResult:
    """Resolve pending records left behind by a crash between create and send.

    Each record older than the grace period gets exactly one retry from its
    stored body; anything that cannot be resent ends up failed. The caller is
    expected to hold the reconciliation lease.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=grace_minutes)
    stale = (
        db.query(DeliveryRecord)
        .filter(DeliveryRecord.status == DeliveryStatus.PENDING, DeliveryRecord.created_at < cutoff)
        .order_by(DeliveryRecord.created_at.asc())
        .all()
    )

    result = ReconcileResult(examined=len(stale))
    if not stale:
        return result

    sender = transport or create_transport()
    for record in stale:
        if not record.body_text and not record.body_html:
            update_status(db, record.id, DeliveryStatus.FAILED, error_message="Abandoned pending delivery (no body)")
            result.marked_failed += 1
            continue

        message = EmailMessage(
            to=record.recipient,
            subject=record.subject or "",
            text=record.body_text or "",
            html=record.body_html or "",
        )
        try:
            provider_id = sender.send(message)
        except Exception as exc:
            update_status(
                db,
                record.id,
                DeliveryStatus.FAILED,
                error_message=f"Reconciliation retry failed: {exc}",
            )
            result.marked_failed += 1
            continue

        update_status(db, record.id, DeliveryStatus.SENT, sent_at=utcnow(), provider_message_id=provider_id)
        result.resent += 1

    logger.info(
        "Outbox reconciliation: %d examined, %d resent, %d marked failed",
        result.examined,
        result.resent,
        result.marked_failed,
    )
    return result


def release_failed_delivery(db: Session, record_id: UUID) -> bool:
    """Operator action: delete a failed record so a later pass may send again."""
    record = (
        db.query(DeliveryRecord)
        .filter(DeliveryRecord.id == record_id, DeliveryRecord.status == DeliveryStatus.FAILED)
        .first()
    )
    if not record:
        return False
    description = f"{record.notification_type} to {record.recipient} for {record.target_date}"
    db.delete(record)
    db.commit()
    logger.info("Released failed delivery: %s", description)
    return True
