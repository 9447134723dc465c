"""
Schedule evaluation.

Cron expressions are a black box handled by croniter: "when is the next
fire after T" and "what was the latest fire at or before T". Expressions
are evaluated in East Africa Time unless another zone is given.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from croniter import croniter

from .entities import Job


# East Africa Time (UTC+3, no daylight saving)
EAT = timezone(timedelta(hours=3), "EAT")


def validate_cron(expression: str) -> bool:
    """Return True if expression is a valid 5-field cron expression."""
    try:
        return bool(croniter.is_valid(expression))
    except Exception:
        return False


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_fire_after(
    expression: str,
    after: datetime,
    tz: tzinfo = EAT,
) -> datetime:
    """Next fire strictly after `after`, returned in UTC."""
    base = _to_utc(after).astimezone(tz)
    return _to_utc(croniter(expression, base).get_next(datetime))


def latest_fire_at_or_before(
    expression: str,
    at: datetime,
    tz: tzinfo = EAT,
) -> datetime:
    """Most recent fire at or before `at`, returned in UTC."""
    local = _to_utc(at).astimezone(tz)
    # croniter.get_prev is strict; start from the next whole minute so a
    # fire inside the current minute is included.
    base = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return _to_utc(croniter(expression, base).get_prev(datetime))


def due_time(job: Job, now: datetime, tz: tzinfo = EAT) -> Optional[datetime]:
    """
    Return the instant at which the job became due, or None if not due.

    Recurring jobs are due when next_run_at <= now, or (when next_run_at has
    not been computed yet) when the cron expression fired since the job was
    scheduled and after its last start. One-off jobs are due when
    scheduled_at <= now.
    """
    if not job.is_enabled:
        return None

    now = _to_utc(now)

    if job.is_recurring and job.cron_expression:
        if job.next_run_at is not None:
            return job.next_run_at if job.next_run_at <= now else None

        fire = latest_fire_at_or_before(job.cron_expression, now, tz)
        if fire < job.scheduled_at:
            return None
        if job.started_at is not None and fire <= job.started_at:
            return None
        return fire

    if job.scheduled_at <= now:
        return job.scheduled_at

    return None


def compute_next_run(job: Job, completed_at: datetime, tz: tzinfo = EAT) -> Optional[datetime]:
    """
    Next run for a recurring, enabled job evaluated at completion time.

    Returns None for one-off or disabled jobs.
    """
    if not (job.is_recurring and job.cron_expression and job.is_enabled):
        return None
    return next_fire_after(job.cron_expression, completed_at, tz)
