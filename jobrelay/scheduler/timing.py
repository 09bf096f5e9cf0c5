"""
Schedule validation and timing rules.
"""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from jobrelay.constants import SCHEDULE_METHODS, BackoffType
from jobrelay.types.common import ensure_utc, is_http_url, utcnow
from jobrelay.types.schedule import BackoffPolicy, EndpointConfig, ScheduleSpec


def load_timezone(name: str) -> ZoneInfo | None:
    """The IANA zone, or None if the name is unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def validate_schedule_spec(spec: ScheduleSpec, now: datetime | None = None) -> list[str]:
    """
    Collect validation errors for a schedule spec.

    Exactly one of ``cron`` and ``at``; the cron expression must parse, ``at``
    must be strictly in the future and the timezone must be a known IANA zone.
    """
    now = now or utcnow()
    errors: list[str] = []
    if spec.cron and spec.at is not None:
        errors.append("Specify either cron or at, not both")
    elif not spec.cron and spec.at is None:
        errors.append("Either cron or at is required")

    if spec.cron and not croniter.is_valid(spec.cron):
        errors.append(f"Invalid cron expression: {spec.cron}")
    if spec.at is not None and not spec.cron and ensure_utc(spec.at) <= now:
        errors.append("Scheduled time must be in the future")
    if load_timezone(spec.timezone) is None:
        errors.append(f"Invalid timezone: {spec.timezone}")
    return errors


def validate_endpoint(endpoint: EndpointConfig) -> list[str]:
    errors: list[str] = []
    if not is_http_url(endpoint.url):
        errors.append("Endpoint URL must be an absolute http(s) URL")
    if endpoint.method not in SCHEDULE_METHODS:
        errors.append(f"Method must be one of {', '.join(SCHEDULE_METHODS)}")
    return errors


def calculate_next_execution(spec: ScheduleSpec, now: datetime | None = None) -> datetime | None:
    """
    Next fire time in UTC.

    Cron expressions are evaluated in the schedule's timezone. None when the
    next occurrence falls after ``end_date`` or a one-shot time has passed.
    """
    now = now or utcnow()
    end_date = ensure_utc(spec.end_date)

    if spec.cron:
        tz = load_timezone(spec.timezone) or ZoneInfo("UTC")
        next_at = croniter(spec.cron, now.astimezone(tz)).get_next(datetime)
        next_at = ensure_utc(next_at)
    elif spec.at is not None:
        next_at = ensure_utc(spec.at)
        if next_at <= now:
            return None
    else:
        return None

    if end_date is not None and next_at > end_date:
        return None
    return next_at


def backoff_delay_ms(policy: BackoffPolicy, attempt: int) -> int:
    """Delay after a failed ``attempt``: fixed, or ``delay * 2^(attempt-1)``."""
    if policy.type == BackoffType.FIXED:
        return policy.delay_ms
    return policy.delay_ms * 2 ** (attempt - 1)
