"""Cron-triggered job endpoints. Every route requires the cron shared secret."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..database.base import get_db
from ..dependencies import require_cron_secret
from ..rate_limit import limiter
from ..scheduler.service import execute_time_slot_job
from ..scheduler.slots import TimeSlot, parse_slot
from .service import outbox_stats, run_reconcile_job, run_stale_check

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])


def _parse_user_ids(raw: str | None) -> list[UUID] | None:
    if not raw:
        return None
    return [UUID(part.strip()) for part in raw.split(",") if part.strip()]


@router.api_route("/email-router", methods=["GET", "POST"])
@limiter.limit(settings.rate_limit_jobs)
def email_router(
    request: Request,
    slot: str | None = Query(None),
    force: bool = Query(False),
    test_user: str | None = Query(None, alias="testUser"),
    db: Session = Depends(get_db),
):
    time_slot = parse_slot(slot)
    if time_slot is None:
        return JSONResponse(
            {"error": "Invalid or missing slot", "validSlots": [s.value for s in TimeSlot]},
            status_code=400,
        )

    try:
        user_ids = _parse_user_ids(test_user)
    except ValueError:
        return JSONResponse({"error": "testUser must be a comma-separated list of user ids"}, status_code=400)

    try:
        result = execute_time_slot_job(db, time_slot, force=force, test_user_ids=user_ids)
    except Exception as exc:
        logger.exception("Time-slot job %s failed", time_slot.value)
        return JSONResponse({"success": False, "slot": time_slot.value, "error": str(exc)}, status_code=500)

    return JSONResponse(result.to_dict())


@router.api_route("/reconcile-outbox", methods=["GET", "POST"])
@limiter.limit(settings.rate_limit_jobs)
def reconcile_outbox(request: Request, db: Session = Depends(get_db)):
    try:
        return JSONResponse(run_reconcile_job(db))
    except Exception as exc:
        logger.exception("Outbox reconciliation failed")
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)


@router.api_route("/check-stale", methods=["GET", "POST"])
@limiter.limit(settings.rate_limit_jobs)
def check_stale(request: Request, db: Session = Depends(get_db)):
    try:
        return JSONResponse(run_stale_check(db))
    except Exception as exc:
        logger.exception("Stale-job check failed")
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)


@router.get("/outbox-stats")
def get_outbox_stats(days: int = Query(7, ge=1, le=90), db: Session = Depends(get_db)):
    return JSONResponse(outbox_stats(db, days))
