"""Shared FastAPI dependencies."""

import hmac
import logging

from fastapi import Request

from .config import settings

logger = logging.getLogger(__name__)


class CronAuthFailed(Exception):
    """Raised when a job trigger presents a bad secret. Handled by exception handler in main.py."""

    pass


def _presented_secret(request: Request) -> str:
    header = request.headers.get("X-Cron-Secret")
    if header:
        return header.strip()
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


def require_cron_secret(request: Request) -> None:
    """Check the shared secret of the cron provider (X-Cron-Secret or Bearer token).

    An unset secret only lets requests through in development.
    """
    expected = settings.cron_secret
    if not expected:
        if settings.is_development:
            return
        logger.error("CRON_SECRET is not configured, rejecting %s", request.url.path)
        raise CronAuthFailed()

    presented = _presented_secret(request)
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("Rejected job trigger on %s: bad credential", request.url.path)
        raise CronAuthFailed()
