"""Job health endpoint for uptime monitors and dashboards."""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database.base import get_db
from .service import check_stale_jobs, get_system_health

router = APIRouter(tags=["health"])


@router.get("/health")
def job_health(
    detailed: bool = Query(False),
    check_stale: bool = Query(False, alias="checkStale"),
    db: Session = Depends(get_db),
):
    """200 when healthy, 503 otherwise. The detailed view only answers 503 on critical."""
    if check_stale:
        check_stale_jobs(db)

    health = get_system_health(db)
    body = {"status": health.status, "timestamp": health.last_checked.isoformat()}

    if not detailed:
        return JSONResponse(body, status_code=200 if health.status == "healthy" else 503)

    body["summary"] = health.summary()
    body["jobs"] = [job.to_dict() for job in health.jobs]
    return JSONResponse(body, status_code=503 if health.status == "critical" else 200)
