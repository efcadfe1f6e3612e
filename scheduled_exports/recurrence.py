"""
Scheduled Exports - Recurrence Calculator.

============================================================
PURPOSE
============================================================
Pure computation of the next trigger instant of a RecurrenceSpec.

- Input and output instants are timezone-aware UTC
- Wall-clock rules (time of day, weekday, day of month) are
  evaluated in the schedule's IANA timezone
- No hidden state: equal inputs always give equal outputs

============================================================
RULES
============================================================
once     start_date, or now when absent
daily    today at time_of_day if still ahead, else tomorrow
weekly   next configured weekday; today never counts (7 days ahead)
monthly  configured day (clamped to month length), this month if
         still ahead, else next month
custom   now + interval_minutes

A result past end_date is clamped to end_date. A start_date in
the future replaces `now` as the base of recurring kinds.

============================================================
"""

from calendar import monthrange
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.clock import ensure_utc
from core.exceptions import ScheduleError

from .models import RecurrenceKind, RecurrenceSpec


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """'HH:MM' -> (hour, minute)."""
    try:
        hours, minutes = (int(part) for part in value.split(":"))
    except ValueError:
        raise ScheduleError(f"Invalid time of day: {value!r}", context={"time_of_day": value})
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ScheduleError(f"Invalid time of day: {value!r}", context={"time_of_day": value})
    return hours, minutes


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ScheduleError(f"Unknown timezone: {name!r}", context={"timezone": name})


def weekday_from_sunday(moment: datetime) -> int:
    """Weekday with 0 = Sunday .. 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def _at_time(moment: datetime, time_of_day: Optional[str]) -> datetime:
    if not time_of_day:
        return moment
    hours, minutes = parse_time_of_day(time_of_day)
    return moment.replace(hour=hours, minute=minutes, second=0, microsecond=0)


def _on_day_of_month(moment: datetime, year: int, month: int, day: int) -> datetime:
    clamped = min(day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=clamped)


def next_run(spec: RecurrenceSpec, now: datetime) -> datetime:
    """Compute the next trigger instant for spec as seen at now."""
    now = ensure_utc(now)

    if spec.kind == RecurrenceKind.ONCE:
        result = ensure_utc(spec.start_date) if spec.start_date else now
        return _clamp(result, spec)

    base = now
    if spec.start_date is not None and ensure_utc(spec.start_date) > now:
        base = ensure_utc(spec.start_date)

    zone = resolve_timezone(spec.timezone)
    local = base.astimezone(zone)

    if spec.kind == RecurrenceKind.DAILY:
        if spec.time_of_day:
            candidate = _at_time(local, spec.time_of_day)
            if candidate <= local:
                candidate = _at_time(local + timedelta(days=1), spec.time_of_day)
        else:
            candidate = local + timedelta(days=1)

    elif spec.kind == RecurrenceKind.WEEKLY:
        target = spec.day_of_week or 0
        offset = (target - weekday_from_sunday(local) + 7) % 7
        candidate = _at_time(local + timedelta(days=offset or 7), spec.time_of_day)

    elif spec.kind == RecurrenceKind.MONTHLY:
        day = spec.day_of_month or 1
        candidate = _at_time(_on_day_of_month(local, local.year, local.month, day), spec.time_of_day)
        if candidate <= local:
            year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
            candidate = _at_time(_on_day_of_month(local, year, month, day), spec.time_of_day)

    elif spec.kind == RecurrenceKind.CUSTOM:
        candidate = local + timedelta(minutes=spec.interval_minutes or 60)

    else:
        raise ScheduleError(f"Unsupported recurrence kind: {spec.kind}")

    return _clamp(candidate.astimezone(timezone.utc), spec)


def _clamp(result: datetime, spec: RecurrenceSpec) -> datetime:
    if spec.end_date is not None:
        end = ensure_utc(spec.end_date)
        if result > end:
            return end
    return result


def is_exhausted(spec: RecurrenceSpec, fired_at: datetime, upcoming: datetime) -> bool:
    """True when the schedule cannot fire again after fired_at."""
    if spec.kind == RecurrenceKind.ONCE:
        return True
    return ensure_utc(upcoming) <= ensure_utc(fired_at)
