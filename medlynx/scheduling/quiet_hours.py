"""
Quiet Hours Policy
==================

Pure predicates deciding whether a dosing slot may be registered.

A quiet window may wrap midnight: with ``start > end`` (22:00-07:00) a time is
inside when ``t >= start or t <= end``; otherwise when ``start <= t <= end``.
Both bounds are inclusive.
"""

from medlynx.db.models.preferences import FrequencyMode, QuietHours
from medlynx.db.models.reminder import NotificationPriority, parse_time_of_day


def _minutes(time_of_day: str) -> int:
    hour, minute = parse_time_of_day(time_of_day)
    return hour * 60 + minute


def is_suppressed(time_of_day: str, quiet_hours: QuietHours) -> bool:
    """True when ``time_of_day`` falls inside an enabled quiet window."""
    if not quiet_hours.enabled:
        return False

    current = _minutes(time_of_day)
    start = _minutes(quiet_hours.start)
    end = _minutes(quiet_hours.end)

    if start > end:
        # Overnight window
        return current >= start or current <= end
    return start <= current <= end


def passes_frequency_filter(priority: NotificationPriority, mode: FrequencyMode) -> bool:
    """Minimal mode drops low-priority reminders; other modes keep everything."""
    if mode == FrequencyMode.MINIMAL:
        return priority != NotificationPriority.LOW
    return True
