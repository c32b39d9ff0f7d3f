"""Pydantic models for reminders, adherence and preferences."""
from medlynx.db.models.preferences import FrequencyMode, NotificationPreferences, QuietHours
from medlynx.db.models.reminder import (
    ActionKind,
    AdherenceLogEntry,
    AdherenceStatus,
    AdherenceSummary,
    AlarmPayload,
    DailyRecurrence,
    DailyRepeat,
    MedicationReminder,
    MonthlyRecurrence,
    NotificationPriority,
    Recurrence,
    ReminderAction,
    ScheduledAlarm,
    WeeklyRecurrence,
    format_time_of_day,
    parse_time_of_day,
)

__all__ = [
    "ActionKind",
    "AdherenceLogEntry",
    "AdherenceStatus",
    "AdherenceSummary",
    "AlarmPayload",
    "DailyRecurrence",
    "DailyRepeat",
    "FrequencyMode",
    "MedicationReminder",
    "MonthlyRecurrence",
    "NotificationPreferences",
    "NotificationPriority",
    "QuietHours",
    "Recurrence",
    "ReminderAction",
    "ScheduledAlarm",
    "WeeklyRecurrence",
    "format_time_of_day",
    "parse_time_of_day",
]
