"""
Trigger Calculation
===================

Pure functions computing the next fire time of a dosing slot.

``next_occurrence(recurrence, time_of_day, from_)`` never returns an instant
at or before ``from_``; consumers rely on that to avoid alarms that re-fire
immediately.

Times of day are wall-clock times in the engine timezone. They are localized
with pytz so a dose at 08:00 stays at 08:00 local time across DST changes.
"""

import calendar
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

import pytz

from medlynx.config import USER_TIMEZONE
from medlynx.db.models.reminder import (
    DailyRecurrence,
    MonthlyRecurrence,
    WeeklyRecurrence,
    parse_time_of_day,
)
from medlynx.services.exceptions import RecurrenceError, ValidationError

AnyRecurrence = Union[DailyRecurrence, WeeklyRecurrence, MonthlyRecurrence]


# =============================================================================
# Helpers
# =============================================================================

def sunday_weekday(day: date) -> int:
    """Weekday numbered 0 (Sunday) .. 6 (Saturday)."""
    return (day.weekday() + 1) % 7


def to_local(moment: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """Express ``moment`` in ``tz``. Naive datetimes are taken as local wall time."""
    if moment.tzinfo is None:
        return tz.localize(moment)
    return moment.astimezone(tz)


def localize_slot(day: date, hour: int, minute: int, tz: pytz.BaseTzInfo) -> datetime:
    """The aware instant of ``day`` at ``hour:minute`` local time."""
    return tz.normalize(tz.localize(datetime.combine(day, time(hour, minute))))


def _parse_slot(time_of_day: str):
    try:
        return parse_time_of_day(time_of_day)
    except ValueError as e:
        raise ValidationError(str(e), field="time_of_day", original_error=e) from e


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, 1)


# =============================================================================
# Per-frequency calculation
# =============================================================================

def _next_daily(hour: int, minute: int, start: datetime, tz: pytz.BaseTzInfo) -> datetime:
    day = start.date()
    # Two days always suffice; the third covers DST folds
    for offset in range(3):
        candidate = localize_slot(day + timedelta(days=offset), hour, minute, tz)
        if candidate > start:
            return candidate
    raise RecurrenceError("No daily occurrence found", frequency="daily")


def _next_weekly(
    recurrence: WeeklyRecurrence,
    hour: int,
    minute: int,
    start: datetime,
    tz: pytz.BaseTzInfo,
) -> datetime:
    days = set(recurrence.days_of_week or [])
    if not days:
        raise RecurrenceError("Weekly recurrence needs at least one weekday", frequency="weekly")
    if any(d < 0 or d > 6 for d in days):
        raise RecurrenceError(f"Weekdays out of range 0-6: {sorted(days)}", frequency="weekly")

    # Offset 7 covers "same weekday next week" when today's slot has passed
    for offset in range(8):
        day = start.date() + timedelta(days=offset)
        if sunday_weekday(day) not in days:
            continue
        candidate = localize_slot(day, hour, minute, tz)
        if candidate > start:
            return candidate
    raise RecurrenceError("No weekly occurrence found", frequency="weekly")


def _next_monthly(
    recurrence: MonthlyRecurrence,
    hour: int,
    minute: int,
    start: datetime,
    tz: pytz.BaseTzInfo,
) -> datetime:
    day_of_month = recurrence.day_of_month
    if day_of_month < 1 or day_of_month > 31:
        raise RecurrenceError(f"dayOfMonth {day_of_month} outside 1-31", frequency="monthly")

    first_of_month = start.date().replace(day=1)
    for months in range(3):
        month_start = _add_months(first_of_month, months)
        last_day = calendar.monthrange(month_start.year, month_start.month)[1]
        day = month_start.replace(day=min(day_of_month, last_day))
        candidate = localize_slot(day, hour, minute, tz)
        if candidate > start:
            return candidate
    raise RecurrenceError("No monthly occurrence found", frequency="monthly")


# =============================================================================
# Public API
# =============================================================================

def next_occurrence(
    recurrence: AnyRecurrence,
    time_of_day: str,
    from_: datetime,
    tz: Optional[pytz.BaseTzInfo] = None,
) -> datetime:
    """
    Compute the next instant a slot fires, strictly after ``from_``.

    Args:
        recurrence: Daily, weekly or monthly rule
        time_of_day: "HH:MM" wall-clock time
        from_: Reference instant (naive values are local wall time)
        tz: Engine timezone (default: SCHEDULER_TIMEZONE)

    Returns:
        Timezone-aware datetime in ``tz``

    Raises:
        ValidationError: Malformed time of day
        RecurrenceError: Malformed recurrence (weekly without days,
                         monthly day outside 1-31, unknown frequency)
    """
    tz = tz or USER_TIMEZONE
    hour, minute = _parse_slot(time_of_day)
    start = to_local(from_, tz)

    if isinstance(recurrence, DailyRecurrence):
        return _next_daily(hour, minute, start, tz)
    if isinstance(recurrence, WeeklyRecurrence):
        return _next_weekly(recurrence, hour, minute, start, tz)
    if isinstance(recurrence, MonthlyRecurrence):
        return _next_monthly(recurrence, hour, minute, start, tz)

    raise RecurrenceError(
        f"Unsupported recurrence: {recurrence!r}",
        frequency=getattr(recurrence, "frequency", None),
    )
