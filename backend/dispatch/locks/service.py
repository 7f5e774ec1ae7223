"""TTL lease lock for cron-triggered jobs.

Acquisition inserts a row keyed by job name. An expired lease is reclaimed
with one conditional UPDATE (compare-and-swap on expires_at) instead of
delete + re-insert, so two reclaimers cannot both win. The lease token is a
fencing token: release only deletes the row it still matches.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database.base import utcnow
from .models import LeaseLock

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return uuid.uuid4().hex


def _insert_lease(db: Session, job_name: str, token: str, now: datetime, expires_at: datetime) -> bool:
    stmt = insert(LeaseLock).values(job_name=job_name, lease_token=token, acquired_at=now, expires_at=expires_at)
    try:
        db.execute(stmt)
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _reclaim_expired(db: Session, job_name: str, token: str, now: datetime, expires_at: datetime) -> bool:
    reclaimed = (
        db.query(LeaseLock)
        .filter(LeaseLock.job_name == job_name, LeaseLock.expires_at <= now)
        .update(
            {
                LeaseLock.lease_token: token,
                LeaseLock.acquired_at: now,
                LeaseLock.expires_at: expires_at,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return reclaimed == 1


def acquire_lease(
    db: Session,
    job_name: str,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> str | None:
    """Try to take the lease for ``job_name``.

    Returns the lease token, or None when another runner holds a live lease.
    """
    now = now or utcnow()
    ttl = ttl_minutes if ttl_minutes is not None else settings.lease_ttl_minutes
    expires_at = now + timedelta(minutes=ttl)
    token = _new_token()

    if _insert_lease(db, job_name, token, now, expires_at):
        logger.info("Lease acquired: %s (ttl %d min)", job_name, ttl)
        return token

    if _reclaim_expired(db, job_name, token, now, expires_at):
        logger.warning("Lease reclaimed from expired holder: %s", job_name)
        return token

    holder = db.query(LeaseLock).filter(LeaseLock.job_name == job_name).first()
    if holder is None:
        # Released between our insert and the reclaim attempt
        if _insert_lease(db, job_name, token, now, expires_at):
            logger.info("Lease acquired on retry: %s", job_name)
            return token
        return None

    logger.info("%s is already running (lease held until %s)", job_name, holder.expires_at)
    return None


def release_lease(db: Session, job_name: str, token: str) -> bool:
    """Release the lease if ``token`` still owns it. Errors are logged, not raised."""
    try:
        deleted = (
            db.query(LeaseLock)
            .filter(LeaseLock.job_name == job_name, LeaseLock.lease_token == token)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to release lease for %s", job_name)
        return False

    if deleted:
        logger.info("Lease released: %s", job_name)
    else:
        logger.warning("Lease for %s no longer owned by this runner, nothing released", job_name)
    return bool(deleted)


@contextmanager
def job_lease(db: Session, job_name: str, ttl_minutes: int | None = None) -> Iterator[str | None]:
    """Hold the lease for the duration of the block. Yields None when not acquired."""
    token = acquire_lease(db, job_name, ttl_minutes)
    try:
        yield token
    finally:
        if token:
            release_lease(db, job_name, token)
