"""Persistence operations for delivery records.

Every write commits immediately: the unique natural key is the only thing
coordinating concurrent senders, so a pending row must be visible to other
processes before the provider is called.
"""

import logging
from datetime import date
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import DeliveryRecord, DeliveryStatus

logger = logging.getLogger(__name__)


class UniqueConstraintViolation(Exception):
    """A delivery record already exists for the natural key."""


def normalize_recipient(recipient: str) -> str:
    return recipient.strip().lower()


def create_record(
    db: Session,
    *,
    recipient: str,
    notification_type: str,
    target_date: date,
    subject: str = "",
    body_text: str | None = None,
    body_html: str | None = None,
    metadata: dict | None = None,
) -> DeliveryRecord:
    """Insert a pending record. Raises UniqueConstraintViolation on key conflict."""
    record = DeliveryRecord(
        recipient=normalize_recipient(recipient),
        notification_type=notification_type,
        target_date=target_date,
        subject=subject,
        body_text=body_text,
        body_html=body_html,
        status=DeliveryStatus.PENDING,
        metadata_=metadata or {},
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise UniqueConstraintViolation(
            f"{notification_type} for {record.recipient} on {target_date.isoformat()}"
        ) from exc
    return record


def find_by_key(db: Session, recipient: str, notification_type: str, target_date: date) -> DeliveryRecord | None:
    return (
        db.query(DeliveryRecord)
        .filter(
            DeliveryRecord.recipient == normalize_recipient(recipient),
            DeliveryRecord.notification_type == notification_type,
            DeliveryRecord.target_date == target_date,
        )
        .first()
    )


def update_status(db: Session, record_id: UUID, status: DeliveryStatus, **fields) -> None:
    """Move a pending record to a terminal status.

    The update is conditional on the row still being pending, so a record
    never regresses once it reached sent or failed.
    """
    values = {DeliveryRecord.status: status}
    for name, value in fields.items():
        values[getattr(DeliveryRecord, name)] = value

    updated = (
        db.query(DeliveryRecord)
        .filter(DeliveryRecord.id == record_id, DeliveryRecord.status == DeliveryStatus.PENDING)
        .update(values, synchronize_session="fetch")
    )
    db.commit()
    if not updated:
        logger.warning("Delivery %s was no longer pending, status %s not applied", record_id, status)
