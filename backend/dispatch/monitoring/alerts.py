"""Operator alert emails for job failures, missed runs and recoveries."""

import enum
import logging
from datetime import datetime
from html import escape

from ..config import settings
from ..database.base import utcnow
from ..notifications.transport import EmailMessage, EmailTransport, create_transport

logger = logging.getLogger(__name__)

_SUBJECT_PREFIX = "[CityPing]"


class AlertType(enum.StrEnum):
    FAILURE = "failure"
    MISSED = "missed"
    RECOVERED = "recovered"


def build_alert_message(
    alert_type: AlertType,
    job_name: str,
    display_name: str,
    *,
    to: str,
    error: str | None = None,
    missed_count: int | None = None,
    consecutive_failures: int | None = None,
    expected_frequency: str | None = None,
    last_run: datetime | None = None,
    now: datetime | None = None,
) -> EmailMessage:
    now = now or utcnow()
    name = f"{display_name} ({job_name})"

    if alert_type == AlertType.FAILURE:
        subject = f"{_SUBJECT_PREFIX} Job Failed: {display_name}"
        lines = [
            "Job Execution Failed",
            f"Job: {name}",
            f"Time: {now.isoformat()}",
            f"Error: {error or 'Unknown error'}",
        ]
    elif alert_type == AlertType.MISSED:
        subject = f"{_SUBJECT_PREFIX} Job Not Running: {display_name}"
        lines = [
            "Job Missing Expected Runs",
            f"Job: {name}",
            f"Expected Frequency: {expected_frequency or 'unknown'}",
            f"Missed Runs: {missed_count if missed_count is not None else 'unknown'}",
            f"Consecutive Failures: {consecutive_failures if consecutive_failures is not None else 'unknown'}",
            f"Last Run: {last_run.isoformat() if last_run else 'Never'}",
        ]
    else:
        subject = f"{_SUBJECT_PREFIX} Job Recovered: {display_name}"
        lines = [
            "Job Has Recovered",
            f"Job: {name}",
            f"Time: {now.isoformat()}",
            "The job is now running successfully again.",
        ]

    text = "\n".join(lines) + "\n\n--\nCityPing Job Monitor\n"
    html = (
        f"<h1>{escape(lines[0])}</h1>"
        + "".join(f"<p>{escape(line)}</p>" for line in lines[1:])
        + '<p style="color:#6b7280; font-size:12px;">CityPing Job Monitor</p>'
    )
    return EmailMessage(to=to, subject=subject, text=text, html=html)


def send_job_alert(
    alert_type: AlertType,
    job_name: str,
    display_name: str | None = None,
    transport: EmailTransport | None = None,
    **details,
) -> bool:
    """Deliver an alert to the operator address. Never raises; returns True if delivered."""
    if not settings.admin_alert_email:
        logger.error("Alert not sent, ADMIN_ALERT_EMAIL missing. Type: %s, Job: %s", alert_type, job_name)
        return False

    message = build_alert_message(
        alert_type,
        job_name,
        display_name or job_name,
        to=settings.admin_alert_email,
        **details,
    )
    try:
        (transport or create_transport()).send(message)
    except Exception:
        logger.exception("Failed to send %s alert for %s", alert_type, job_name)
        return False

    logger.info("Sent %s alert for %s", alert_type, job_name)
    return True
