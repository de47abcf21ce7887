"""
Next-run computation for recurring schedules.

Rules:
- DAILY: today at time_of_day if still ahead, else tomorrow
- WEEKLY: next day_of_week (0 = Sunday ... 6 = Saturday) at time_of_day;
  when that day is today and the time has passed, one week later
- MONTHLY: day_of_month of this month (clamped to the month's length) at
  time_of_day, else the same day of next month

A time equal to ``now`` counts as passed, so the result is always strictly
in the future. ``time_of_day`` is wall-clock time in ``tz``; the result is
returned in UTC.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.exceptions import ConfigError
from models.base import Frequency


def _zone(tz: Union[str, timezone, ZoneInfo, None]):
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        try:
            return ZoneInfo(tz)
        except ZoneInfoNotFoundError as e:
            raise ConfigError(f"Unknown timezone: {tz}", original_exception=e)
    return tz


def _sunday_based_weekday(day: date) -> int:
    # date.weekday(): Monday = 0
    return (day.weekday() + 1) % 7


def _clamped(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def compute_next_run(
    frequency: Union[Frequency, str],
    time_of_day: time,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
    now: Optional[datetime] = None,
    tz: Union[str, timezone, ZoneInfo, None] = None
) -> datetime:
    """
    Compute the next instant a schedule is due.

    Raises:
        ConfigError: Unknown frequency or missing/out-of-range day fields
    """
    try:
        frequency = Frequency(frequency)
    except ValueError as e:
        raise ConfigError(f"Unknown schedule frequency: {frequency}", original_exception=e)

    zone = _zone(tz)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)
    today = local_now.date()
    wall_time = time_of_day.replace(tzinfo=None)

    def at(day: date) -> datetime:
        return datetime.combine(day, wall_time, tzinfo=zone)

    if frequency == Frequency.DAILY:
        candidate = at(today)
        if candidate <= local_now:
            candidate = at(today + timedelta(days=1))

    elif frequency == Frequency.WEEKLY:
        if day_of_week is None or not 0 <= day_of_week <= 6:
            raise ConfigError(
                "WEEKLY schedules need day_of_week between 0 (Sunday) and 6 (Saturday)",
                context={"day_of_week": day_of_week}
            )
        days_ahead = (7 + day_of_week - _sunday_based_weekday(today)) % 7
        candidate = at(today + timedelta(days=days_ahead))
        if candidate <= local_now:
            candidate = at(today + timedelta(days=days_ahead + 7))

    else:
        if day_of_month is None or not 1 <= day_of_month <= 31:
            raise ConfigError(
                "MONTHLY schedules need day_of_month between 1 and 31",
                context={"day_of_month": day_of_month}
            )
        candidate = at(_clamped(today.year, today.month, day_of_month))
        if candidate <= local_now:
            year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
            candidate = at(_clamped(year, month, day_of_month))

    return candidate.astimezone(timezone.utc)
