"""Maintenance jobs triggered over HTTP: outbox reconciliation and the stale-job sweep."""

import logging
from dataclasses import asdict
from datetime import timedelta

from sqlalchemy.orm import Session

from ..config import settings
from ..locks.service import acquire_lease, release_lease
from ..monitoring.service import JobResult, check_stale_jobs, get_system_health, mark_stuck_runs_timed_out, run_monitored
from ..notifications.transport import EmailTransport, create_transport
from ..outbox.service import get_delivery_stats, reconcile_pending_deliveries
from ..scheduler.content import local_today
from ..scheduler.slots import TIME_SLOT_CONFIG

logger = logging.getLogger(__name__)

RECONCILE_JOB_NAME = "reconcile-outbox"


def run_reconcile_job(db: Session, transport: EmailTransport | None = None) -> dict:
    """Reconcile abandoned pending deliveries under the reconciliation lease."""
    token = acquire_lease(db, RECONCILE_JOB_NAME)
    if token is None:
        return {"success": True, "reason": "lock_held"}

    sender = transport or create_transport()
    try:

        def _reconcile() -> JobResult:
            result = reconcile_pending_deliveries(db, settings.outbox_pending_grace_minutes, transport=sender)
            return JobResult(
                items_processed=result.resent,
                items_failed=result.marked_failed,
                metadata=asdict(result),
            )

        job_result = run_monitored(db, RECONCILE_JOB_NAME, _reconcile, transport=sender)
    finally:
        release_lease(db, RECONCILE_JOB_NAME, token)

    return {"success": True, "reason": None, **job_result.metadata}


def run_stale_check(db: Session, transport: EmailTransport | None = None) -> dict:
    """Close stuck runs, alert on critical jobs and report the resulting health."""
    sender = transport or create_transport()
    timed_out = mark_stuck_runs_timed_out(db, transport=sender)
    alerted = check_stale_jobs(db, transport=sender)
    health = get_system_health(db)
    if alerted:
        logger.warning("Stale-job alerts sent for: %s", ", ".join(alerted))
    return {
        "success": True,
        "status": health.status,
        "timedOut": timed_out,
        "alerted": alerted,
        "summary": health.summary(),
    }


def outbox_stats(db: Session, days: int = 7) -> dict:
    """Per-slot delivery counts over the last ``days`` target dates (inclusive of today)."""
    end = local_today()
    start = end - timedelta(days=max(days, 1) - 1)
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "types": {
            config.notification_type: get_delivery_stats(db, config.notification_type, start, end)
            for config in TIME_SLOT_CONFIG.values()
        },
    }
