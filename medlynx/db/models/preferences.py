"""
Notification Preferences
========================

Process-wide notification settings. Instances are frozen: a preference change
builds a new instance with ``with_changes()`` and the scheduler swaps it in
wholesale, so alarm handling never sees a half-updated value.

Defaults match the mobile app: reminders on, quiet hours 22:00-07:00,
balanced frequency.
"""

from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medlynx.db.models.reminder import format_time_of_day, parse_time_of_day


class FrequencyMode(str, Enum):
    """How many notifications the user wants to receive."""
    MINIMAL = "minimal"
    BALANCED = "balanced"
    COMPREHENSIVE = "comprehensive"


class QuietHours(BaseModel):
    """Window during which alarms are not registered. May wrap midnight."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    enabled: bool = True
    start: str = Field(default="22:00", description="HH:MM window start (inclusive)")
    end: str = Field(default="07:00", description="HH:MM window end (inclusive)")

    @field_validator("start", "end")
    @classmethod
    def normalize_time(cls, v: str) -> str:
        return format_time_of_day(*parse_time_of_day(v))


class NotificationPreferences(BaseModel):
    """User notification preferences, loaded once and replaced wholesale."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    reminders_enabled: bool = Field(default=True, description="Master switch for medication reminders")
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    frequency_mode: FrequencyMode = Field(default=FrequencyMode.BALANCED)

    def with_changes(self, **changes: Any) -> "NotificationPreferences":
        """Return a new, validated instance with ``changes`` applied."""
        merged: Dict[str, Any] = self.model_dump()
        merged.update(changes)
        return NotificationPreferences.model_validate(merged)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
