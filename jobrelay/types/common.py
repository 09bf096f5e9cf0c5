"""
Helpers shared by the type definitions.
"""

from datetime import datetime, timezone

import httpx


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_z(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    value = ensure_utc(value)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_http_url(value: str) -> bool:
    """Check that a string is an absolute http(s) URL."""
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError):
        return False
    return url.scheme in ("http", "https") and bool(url.host)


def validate_http_url(value: str) -> str:
    """Pydantic validator body for absolute http(s) URLs."""
    if not is_http_url(value):
        raise ValueError(f"must be an absolute http(s) URL: {value!r}")
    return value
