"""
Medication Reminder Models
==========================

Pydantic V2 models for medication reminders, their recurrence rules and the
append-only adherence log.

Records serialize with camelCase aliases (``medicationName``, ``timesOfDay``)
so the JSON persisted in the key-value store matches the records the mobile
client reads and writes. Python code uses the snake_case field names.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from medlynx.config import local_today


_TIME_OF_DAY_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """
    Parse an ``HH:MM`` string into (hour, minute).

    Raises:
        ValueError: If the string is not a valid 24-hour time of day
    """
    match = _TIME_OF_DAY_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day: {value!r} (out of range)")
    return hour, minute


def format_time_of_day(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


class _RecordModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the plain JSON record persisted in the store."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Enums
# =============================================================================

class NotificationPriority(str, Enum):
    """Delivery priority; ``low`` reminders are dropped in minimal mode."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class AdherenceStatus(str, Enum):
    """User response recorded in the adherence log."""
    TAKEN = "taken"
    SNOOZED = "snoozed"
    SKIPPED = "skipped"


class ActionKind(str, Enum):
    """Action a user can pick on a delivered reminder."""
    TAKEN = "taken"
    SNOOZE = "snooze"
    SKIP = "skip"


# =============================================================================
# Recurrence (closed tagged variant)
# =============================================================================

class DailyRecurrence(_RecordModel):
    """Every calendar day."""
    model_config = ConfigDict(frozen=True)

    frequency: Literal["daily"] = "daily"


class WeeklyRecurrence(_RecordModel):
    """On selected weekdays. Weekdays are numbered 0 (Sunday) to 6 (Saturday)."""
    model_config = ConfigDict(frozen=True)

    frequency: Literal["weekly"] = "weekly"
    days_of_week: List[int] = Field(
        ...,
        min_length=1,
        description="Weekdays to fire on, 0=Sunday .. 6=Saturday",
    )

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: List[int]) -> List[int]:
        """Reject out-of-range weekdays and collapse duplicates."""
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"Invalid weekday {day}: must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(v))


class MonthlyRecurrence(_RecordModel):
    """
    On one day of each month.

    Days past the end of a short month clamp to that month's last day.
    """
    model_config = ConfigDict(frozen=True)

    frequency: Literal["monthly"] = "monthly"
    day_of_month: int = Field(..., ge=1, le=31)


Recurrence = Annotated[
    Union[DailyRecurrence, WeeklyRecurrence, MonthlyRecurrence],
    Field(discriminator="frequency"),
]


# =============================================================================
# Core Models
# =============================================================================

class MedicationReminder(_RecordModel):
    """
    MedicationReminder: the dosing schedule of one medication.

    Source of truth from which scheduled alarms are derived. One alarm slot
    exists per entry in ``times_of_day``.
    """
    id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        description="Stable reminder id (caller-assigned or generated)",
    )
    medication_name: str = Field(..., min_length=1, description="Medication name")
    dosage: str = Field(default="", description="Dosage text, e.g. '500mg'")
    instructions: Optional[str] = Field(default=None, description="Free-text instructions")

    times_of_day: List[str] = Field(
        default_factory=list,
        description="HH:MM slots; duplicates collapse, order is kept",
    )
    recurrence: Recurrence = Field(default_factory=DailyRecurrence)

    start_date: date = Field(
        default_factory=lambda: local_today(),
        description="First dosing day; defaults to today in the scheduling timezone",
    )
    end_date: Optional[date] = Field(
        default=None,
        description="Inclusive last day; the reminder ends once today is past it",
    )
    is_active: bool = Field(default=True, description="Soft-disable without deletion")
    priority: NotificationPriority = Field(default=NotificationPriority.HIGH)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "med-metformin",
                "medicationName": "Metformin",
                "dosage": "500mg",
                "instructions": "Take with food",
                "timesOfDay": ["08:00", "20:00"],
                "recurrence": {"frequency": "daily"},
                "startDate": "2026-01-01",
                "endDate": None,
                "isActive": True,
                "priority": "high",
            }
        }
    )

    @field_validator("medication_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("medicationName cannot be blank")
        return v.strip()

    @field_validator("times_of_day")
    @classmethod
    def normalize_times(cls, v: List[str]) -> List[str]:
        """Zero-pad each time and drop duplicates, keeping first-seen order."""
        normalized: List[str] = []
        for raw in v:
            slot = format_time_of_day(*parse_time_of_day(raw))
            if slot not in normalized:
                normalized.append(slot)
        return normalized

    @model_validator(mode="after")
    def validate_schedule(self) -> "MedicationReminder":
        if self.is_active and not self.times_of_day:
            raise ValueError("timesOfDay must not be empty while the reminder is active")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError(
                f"endDate {self.end_date} is before startDate {self.start_date}"
            )
        return self

    def is_ended(self, on: date) -> bool:
        """True when soft-disabled or when ``on`` is past the end date."""
        if not self.is_active:
            return True
        return self.end_date is not None and on > self.end_date


class AdherenceLogEntry(_RecordModel):
    """One immutable user response to a fired alarm."""
    model_config = ConfigDict(frozen=True)

    medication_id: str = Field(..., min_length=1)
    scheduled_time_of_day: str = Field(..., description="HH:MM slot the response refers to")
    acted_at: datetime = Field(..., description="When the user acted (timezone-aware)")
    status: AdherenceStatus
    alarm_id: Optional[str] = Field(default=None, description="Alarm the response came from")

    @field_validator("acted_at")
    @classmethod
    def validate_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("actedAt must be timezone-aware")
        return v


class AdherenceSummary(BaseModel):
    """Simple adherence counters for one medication."""
    medication_id: str
    taken: int = 0
    snoozed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.taken + self.snoozed + self.skipped

    @property
    def adherence_rate(self) -> float:
        """Share of resolved doses (taken or skipped) that were taken."""
        resolved = self.taken + self.skipped
        if resolved == 0:
            return 0.0
        return round(self.taken / resolved, 4)


class ReminderAction(BaseModel):
    """A discrete user action: taken, skip, or snooze for N minutes."""
    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    minutes: Optional[int] = Field(default=None, description="Snooze length (snooze only)")

    @model_validator(mode="after")
    def validate_minutes(self) -> "ReminderAction":
        if self.kind == ActionKind.SNOOZE:
            if self.minutes is None or self.minutes <= 0:
                raise ValueError("Snooze requires a positive number of minutes")
        elif self.minutes is not None:
            raise ValueError(f"'{self.kind.value}' does not take minutes")
        return self

    @classmethod
    def taken(cls) -> "ReminderAction":
        return cls(kind=ActionKind.TAKEN)

    @classmethod
    def skip(cls) -> "ReminderAction":
        return cls(kind=ActionKind.SKIP)

    @classmethod
    def snooze(cls, minutes: int) -> "ReminderAction":
        return cls(kind=ActionKind.SNOOZE, minutes=minutes)


# =============================================================================
# Notification Port Records
# =============================================================================

class AlarmPayload(BaseModel):
    """Content shown by the platform when an alarm fires."""
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class DailyRepeat(BaseModel):
    """Native daily repeat, only used as a delivery fallback by port adapters."""
    model_config = ConfigDict(frozen=True)

    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(..., ge=0, le=59)


class ScheduledAlarm(BaseModel):
    """One registration as reported by ``NotificationPort.list_scheduled()``."""
    alarm_id: str
    fire_at: datetime

    @property
    def fire_at_ms(self) -> int:
        return int(self.fire_at.timestamp() * 1000)
