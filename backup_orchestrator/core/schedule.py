"""Next-run computation for job schedules.

All functions are pure: given a schedule, the current instant and the
timezone wall-clock times are expressed in, they return the next instant
(UTC) the job must fire, or ``None`` when it must not be scheduled.
"""

import logging
import re
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from backup_orchestrator.schemas.job import (
    DailySchedule,
    MonthlySchedule,
    OnceSchedule,
    WeeklySchedule,
)

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# Weekdays use 0=Sunday..6=Saturday for daily schedules.
DEFAULT_DAILY_DAYS = [1, 2, 3, 4, 5]
DAILY_SCAN_DAYS = 14
MONTHLY_SCAN_DAYS = 60


def parse_time(value: str | None, default: str = "00:00") -> time:
    """Parse an ``HH:MM`` string; raises ValueError when malformed."""
    raw = (value or default).strip()
    if not TIME_PATTERN.match(raw):
        raise ValueError(f"Invalid time of day: {raw!r}")
    hours, minutes = raw.split(":")
    return time(int(hours), int(minutes))


def sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _at(day: date, at: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(UTC)


def next_once_run(schedule: OnceSchedule, now: datetime, tz: tzinfo) -> datetime | None:
    """A one-shot schedule fires only if its instant is still in the future."""
    start_date = schedule.start_date or now.astimezone(tz).date()
    candidate = _at(start_date, parse_time(schedule.start_time), tz)
    if candidate <= now:
        return None
    return _to_utc(candidate)


def next_daily_run(schedule: DailySchedule, now: datetime, tz: tzinfo) -> datetime | None:
    times = schedule.times or [schedule.start_time or "00:00"]
    sorted_times = sorted(t for t in times if isinstance(t, str) and TIME_PATTERN.match(t))
    if not sorted_times:
        return None

    if schedule.days is None:
        days = set(DEFAULT_DAILY_DAYS)
    else:
        days = {d for d in schedule.days if 0 <= d <= 6}
    if not days:
        return None

    today = now.astimezone(tz).date()
    for offset in range(DAILY_SCAN_DAYS):
        day = today + timedelta(days=offset)
        if sunday_based_weekday(day) not in days:
            continue
        for value in sorted_times:
            candidate = _at(day, parse_time(value), tz)
            if candidate > now:
                return _to_utc(candidate)

    return None


def next_weekly_run(schedule: WeeklySchedule, now: datetime, tz: tzinfo) -> datetime | None:
    at = parse_time(schedule.start_time)
    days = set(schedule.days_of_week or [1])
    today = now.astimezone(tz).date()

    window = 7 * max(schedule.every_n_weeks, 1)
    for offset in range(window):
        day = today + timedelta(days=offset)
        candidate = _at(day, at, tz)
        if day.isoweekday() in days and candidate > now:
            return _to_utc(candidate)

    # Nothing matched inside the window: fire on the first day past it.
    return _to_utc(_at(today + timedelta(days=window), at, tz))


def next_monthly_run(schedule: MonthlySchedule, now: datetime, tz: tzinfo) -> datetime | None:
    at = parse_time(schedule.start_time)
    days = set(schedule.days_of_month or [1])
    today = now.astimezone(tz).date()

    for offset in range(MONTHLY_SCAN_DAYS):
        day = today + timedelta(days=offset)
        candidate = _at(day, at, tz)
        if day.day in days and candidate > now:
            return _to_utc(candidate)

    return _to_utc(_at(today + timedelta(days=MONTHLY_SCAN_DAYS), at, tz))


def compute_next_run(schedule, now: datetime | None = None, tz: tzinfo = UTC) -> datetime | None:
    """Next UTC instant for any schedule variant, or None.

    Unknown schedule types and malformed times are logged and yield None.
    """
    if schedule is None:
        return None

    if now is None:
        now = datetime.now(UTC)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    try:
        if isinstance(schedule, OnceSchedule):
            return next_once_run(schedule, now, tz)
        if isinstance(schedule, DailySchedule):
            return next_daily_run(schedule, now, tz)
        if isinstance(schedule, WeeklySchedule):
            return next_weekly_run(schedule, now, tz)
        if isinstance(schedule, MonthlySchedule):
            return next_monthly_run(schedule, now, tz)
    except ValueError as e:
        logger.error(f"Failed to compute next run for {schedule.type} schedule: {e}")
        return None

    logger.warning(f"Unrecognized schedule type: {getattr(schedule, 'type', None)}")
    return None
