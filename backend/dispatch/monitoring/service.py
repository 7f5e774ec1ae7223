"""Job execution tracking, health computation and stale-job alerting.

Every run writes a ``running`` row at start and exactly one terminal update.
Health is pulled from those rows on demand, nothing about it is persisted
apart from the last "job not running" alert time used for rate limiting.

Usage::

    job = start_job(db, "send-daily-pulse")
    try:
        ...
        job.success(JobResult(items_processed=100))
    except Exception as exc:
        job.fail(exc)
        raise
"""

import enum
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from ..config import settings
from ..database.base import as_utc, utcnow
from ..locks.service import job_lease
from ..notifications.transport import EmailTransport
from .alerts import AlertType, send_job_alert
from .models import JobAlertState, JobRun, JobRunStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FAILURE_STATUSES = (JobRunStatus.FAILED, JobRunStatus.TIMEOUT)
_TERMINAL_STATUSES = (JobRunStatus.SUCCESS, JobRunStatus.FAILED, JobRunStatus.TIMEOUT)
_HEALTH_SCAN_LIMIT = 20
_TIMEOUT_MESSAGE = "Job exceeded maximum execution time"

STALE_CHECK_LEASE = "check-stale-jobs"


# ── Configuration ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class JobConfig:
    display_name: str
    frequency: str  # "5m", "4h", "24h"
    alert_after_missed: int


JOB_CONFIGS: dict[str, JobConfig] = {
    "email-timeslot-morning": JobConfig("Morning Briefing Email", "24h", 1),
    "email-timeslot-noon": JobConfig("Midday Pulse Email", "24h", 1),
    "email-timeslot-evening": JobConfig("Evening Wind-Down Email", "24h", 1),
    "reconcile-outbox": JobConfig("Outbox Reconciliation", "1h", 3),
    "ingest-mta-alerts": JobConfig("MTA Alerts", "5m", 3),
    "ingest-nyc-events": JobConfig("NYC Events", "24h", 2),
    "ingest-news": JobConfig("News Ingestion", "24h", 2),
    "curate-news": JobConfig("News Curation", "24h", 2),
    "scrape-311": JobConfig("311 Alerts", "4h", 2),
    "scrape-air-quality": JobConfig("Air Quality", "8h", 2),
}

_FREQUENCY_RE = re.compile(r"^(\d+)(m|h)$")


def parse_frequency(freq: str) -> timedelta:
    """Parse "5m" / "4h" into a timedelta. Unparseable values fall back to 24h."""
    match = _FREQUENCY_RE.match(freq or "")
    if not match:
        return timedelta(hours=24)
    value, unit = int(match.group(1)), match.group(2)
    if value <= 0:
        return timedelta(hours=24)
    return timedelta(minutes=value) if unit == "m" else timedelta(hours=value)


def _display_name(job_name: str) -> str:
    config = JOB_CONFIGS.get(job_name)
    return config.display_name if config else job_name


# ── Run tracking ───────────────────────────────────────────────────────


@dataclass
class JobResult:
    items_processed: int = 0
    items_failed: int = 0
    metadata: dict = field(default_factory=dict)


def _recent_terminal_runs(db: Session, job_name: str, limit: int) -> list[JobRun]:
    return (
        db.query(JobRun)
        .filter(JobRun.job_name == job_name, JobRun.status.in_(_TERMINAL_STATUSES))
        .order_by(JobRun.started_at.desc())
        .limit(limit)
        .all()
    )


def _leading_failures(runs: list[JobRun]) -> int:
    count = 0
    for run in runs:
        if run.status == JobRunStatus.SUCCESS:
            break
        count += 1
    return count


@dataclass(frozen=True)
class JobHandle:
    """Opaque handle over one job_runs row."""

    db: Session
    run_id: UUID
    job_name: str
    started_at: datetime
    transport: EmailTransport | None = None

    def _finish(self, status: JobRunStatus, now: datetime | None, **fields) -> int:
        completed_at = now or utcnow()
        duration_ms = int((completed_at - self.started_at).total_seconds() * 1000)
        values = {
            JobRun.status: status,
            JobRun.completed_at: completed_at,
            JobRun.duration_ms: duration_ms,
        }
        for name, value in fields.items():
            values[getattr(JobRun, name)] = value

        updated = (
            self.db.query(JobRun)
            .filter(JobRun.id == self.run_id, JobRun.status == JobRunStatus.RUNNING)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            logger.warning("Run %s of %s already finished, %s ignored", self.run_id, self.job_name, status)
        return duration_ms

    def success(self, result: JobResult | None = None, now: datetime | None = None) -> None:
        result = result or JobResult()
        duration_ms = self._finish(
            JobRunStatus.SUCCESS,
            now,
            items_processed=result.items_processed,
            items_failed=result.items_failed,
            metadata_=result.metadata,
        )
        logger.info("Success: %s (%dms, %d processed)", self.job_name, duration_ms, result.items_processed)

        previous = (
            self.db.query(JobRun)
            .filter(
                JobRun.job_name == self.job_name,
                JobRun.id != self.run_id,
                JobRun.status.in_(_TERMINAL_STATUSES),
                JobRun.started_at <= self.started_at,
            )
            .order_by(JobRun.started_at.desc())
            .limit(_HEALTH_SCAN_LIMIT)
            .all()
        )
        if _leading_failures(previous) >= 2:
            send_job_alert(AlertType.RECOVERED, self.job_name, _display_name(self.job_name), transport=self.transport)

    def fail(self, error: BaseException | str, now: datetime | None = None) -> None:
        error_message = str(error) or error.__class__.__name__
        self._finish(JobRunStatus.FAILED, now, error_message=error_message)
        logger.error("Failed: %s - %s", self.job_name, error_message)

        last_two = _recent_terminal_runs(self.db, self.job_name, 2)
        if len(last_two) == 2 and all(run.status in _FAILURE_STATUSES for run in last_two):
            send_job_alert(
                AlertType.FAILURE,
                self.job_name,
                _display_name(self.job_name),
                transport=self.transport,
                error=error_message,
            )

    def timeout(self, now: datetime | None = None) -> None:
        self._finish(JobRunStatus.TIMEOUT, now, error_message=_TIMEOUT_MESSAGE)
        logger.error("Timeout: %s", self.job_name)
        send_job_alert(
            AlertType.FAILURE,
            self.job_name,
            _display_name(self.job_name),
            transport=self.transport,
            error=_TIMEOUT_MESSAGE,
        )


def start_job(
    db: Session,
    job_name: str,
    transport: EmailTransport | None = None,
    now: datetime | None = None,
) -> JobHandle:
    """Record the start of a job execution and return its handle."""
    started_at = now or utcnow()
    run = JobRun(job_name=job_name, status=JobRunStatus.RUNNING, started_at=started_at)
    db.add(run)
    db.commit()
    logger.info("Started: %s (%s)", job_name, run.id)
    return JobHandle(db=db, run_id=run.id, job_name=job_name, started_at=started_at, transport=transport)


def run_monitored(
    db: Session,
    job_name: str,
    fn: Callable[[], T],
    transport: EmailTransport | None = None,
) -> T:
    """Run ``fn`` under a job handle. A returned JobResult is recorded as-is."""
    handle = start_job(db, job_name, transport=transport)
    try:
        result = fn()
    except Exception as exc:
        db.rollback()
        handle.fail(exc)
        raise
    handle.success(result if isinstance(result, JobResult) else None)
    return result


def mark_stuck_runs_timed_out(
    db: Session,
    max_runtime_minutes: int | None = None,
    now: datetime | None = None,
    transport: EmailTransport | None = None,
) -> int:
    """Watchdog: close ``running`` rows older than the deadline as timeouts."""
    now = now or utcnow()
    limit = max_runtime_minutes if max_runtime_minutes is not None else settings.job_max_runtime_minutes
    deadline = now - timedelta(minutes=limit)

    stuck = (
        db.query(JobRun)
        .filter(JobRun.status == JobRunStatus.RUNNING, JobRun.started_at < deadline)
        .all()
    )
    handles = [
        JobHandle(db=db, run_id=run.id, job_name=run.job_name, started_at=as_utc(run.started_at), transport=transport)
        for run in stuck
    ]
    for handle in handles:
        handle.timeout(now=now)
    if handles:
        logger.warning("Marked %d stuck job runs as timed out", len(handles))
    return len(handles)


# ── Health ─────────────────────────────────────────────────────────────


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class JobHealth:
    job_name: str
    display_name: str
    status: HealthStatus
    last_run: datetime | None
    last_status: str | None
    expected_frequency: str
    missed_runs: int
    consecutive_failures: int

    def to_dict(self) -> dict:
        return {
            "name": self.job_name,
            "displayName": self.display_name,
            "status": self.status.value,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastStatus": self.last_status,
            "expectedFrequency": self.expected_frequency,
            "missedRuns": self.missed_runs,
            "consecutiveFailures": self.consecutive_failures,
        }


def classify_health(
    has_success: bool, missed_runs: int, consecutive_failures: int, alert_after_missed: int
) -> HealthStatus:
    if not has_success:
        return HealthStatus.UNKNOWN
    if missed_runs >= alert_after_missed or consecutive_failures >= 3:
        return HealthStatus.CRITICAL
    if missed_runs >= 1 or consecutive_failures >= 2:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def get_job_health(db: Session, job_name: str, now: datetime | None = None) -> JobHealth:
    config = JOB_CONFIGS.get(job_name)
    if config is None:
        return JobHealth(job_name, job_name, HealthStatus.UNKNOWN, None, None, "unknown", 0, 0)

    now = now or utcnow()
    interval = parse_frequency(config.frequency)

    last_success = (
        db.query(JobRun)
        .filter(JobRun.job_name == job_name, JobRun.status == JobRunStatus.SUCCESS)
        .order_by(JobRun.started_at.desc())
        .first()
    )
    last_run = (
        db.query(JobRun)
        .filter(JobRun.job_name == job_name)
        .order_by(JobRun.started_at.desc())
        .first()
    )
    consecutive_failures = _leading_failures(_recent_terminal_runs(db, job_name, _HEALTH_SCAN_LIMIT))

    missed_runs = 0
    if last_success is not None:
        elapsed = now - as_utc(last_success.started_at)
        missed_runs = max(0, math.floor(elapsed / interval) - 1)

    return JobHealth(
        job_name=job_name,
        display_name=config.display_name,
        status=classify_health(last_success is not None, missed_runs, consecutive_failures, config.alert_after_missed),
        last_run=as_utc(last_run.started_at) if last_run else None,
        last_status=last_run.status.value if last_run else None,
        expected_frequency=config.frequency,
        missed_runs=missed_runs,
        consecutive_failures=consecutive_failures,
    )


@dataclass
class SystemHealth:
    status: str  # healthy | degraded | critical
    jobs: list[JobHealth]
    last_checked: datetime

    def summary(self) -> dict:
        counts = {status.value: 0 for status in HealthStatus}
        for job in self.jobs:
            counts[job.status.value] += 1
        return {"total": len(self.jobs), **counts}


def get_system_health(db: Session, now: datetime | None = None) -> SystemHealth:
    now = now or utcnow()
    jobs = [get_job_health(db, name, now) for name in JOB_CONFIGS]

    if any(j.status == HealthStatus.CRITICAL for j in jobs):
        status = "critical"
    elif any(j.status == HealthStatus.WARNING for j in jobs):
        status = "degraded"
    else:
        status = "healthy"
    return SystemHealth(status=status, jobs=jobs, last_checked=now)


def check_stale_jobs(
    db: Session,
    now: datetime | None = None,
    transport: EmailTransport | None = None,
) -> list[str]:
    """Alert on critical jobs, at most once per job per cooldown window.

    Returns the names of jobs an alert was delivered for. Overlapping sweeps
    are serialized by a lease; the loser alerts on nothing.
    """
    with job_lease(db, STALE_CHECK_LEASE) as token:
        if token is None:
            logger.info("Stale-job sweep already in progress, skipping")
            return []
        return _alert_critical_jobs(db, now or utcnow(), transport)


def _alert_critical_jobs(db: Session, now: datetime, transport: EmailTransport | None) -> list[str]:
    cooldown = timedelta(hours=settings.alert_cooldown_hours)
    alerted: list[str] = []

    for job_name, config in JOB_CONFIGS.items():
        health = get_job_health(db, job_name, now)
        if health.status != HealthStatus.CRITICAL:
            continue

        state = db.get(JobAlertState, job_name)
        last_alerted = as_utc(state.last_alerted_at) if state else None
        if last_alerted is not None and now - last_alerted < cooldown:
            logger.debug("Skipping alert for %s, last sent %s", job_name, last_alerted.isoformat())
            continue

        delivered = send_job_alert(
            AlertType.MISSED,
            job_name,
            config.display_name,
            transport=transport,
            missed_count=health.missed_runs,
            consecutive_failures=health.consecutive_failures,
            expected_frequency=config.frequency,
            last_run=health.last_run,
        )
        if not delivered:
            continue

        if state is None:
            db.add(JobAlertState(job_name=job_name, last_alerted_at=now))
        else:
            state.last_alerted_at = now
        db.commit()
        alerted.append(job_name)

    return alerted
