"""Rate limiting singleton using slowapi.

Buckets are per caller and per path, so a burst on one job trigger does
not throttle the others.
"""

from fastapi import Request
from slowapi import Limiter


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _caller_and_path(request: Request) -> str:
    return f"{_client_ip(request)}:{request.url.path}"


limiter = Limiter(key_func=_caller_and_path)
