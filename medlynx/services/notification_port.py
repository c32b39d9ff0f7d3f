"""
Notification Port
=================

Platform notification capability used by the reminder scheduler.

Semantics every backend honours:
- ``schedule`` with an id that is already registered replaces it.
- ``cancel`` of an unknown id is a no-op.
- ``list_scheduled`` reports what is actually registered right now.

Backends:
- ``InMemoryNotificationPort``     : dict-backed, supports a permission flag
                                     and an alarm quota. Used in tests.
- ``APSchedulerNotificationPort``  : one APScheduler job per alarm
                                     (DateTrigger, or CronTrigger for the
                                     native daily-repeat fallback). When a job
                                     runs, the delivery callback is awaited
                                     with the alarm id and payload.

Inbound platform events (a fired alarm, or the user tapping an action) are
decoded with ``DeliveryEvent``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medlynx.db.models.reminder import (
    ActionKind,
    AlarmPayload,
    DailyRepeat,
    ReminderAction,
    ScheduledAlarm,
)
from medlynx.services.exceptions import (
    NotificationPermissionError,
    NotificationPortError,
    QuotaExceededError,
)

logger = logging.getLogger(__name__)

DeliveryCallback = Callable[[str, AlarmPayload], Awaitable[Any]]


# =============================================================================
# Port Interface
# =============================================================================

class NotificationPort(ABC):
    """Schedule, cancel and enumerate platform alarms."""

    @abstractmethod
    async def schedule(
        self,
        alarm_id: str,
        fire_at: datetime,
        payload: AlarmPayload,
        repeat: Optional[DailyRepeat] = None,
    ) -> None:
        """
        Register (or replace) an alarm.

        Raises:
            NotificationPermissionError: Permission not granted
            QuotaExceededError: Platform alarm cap reached
            NotificationPortError: Any other platform failure
        """

    @abstractmethod
    async def cancel(self, alarm_id: str) -> None:
        """Remove an alarm. Unknown ids are ignored."""

    @abstractmethod
    async def list_scheduled(self) -> List[ScheduledAlarm]:
        """Alarms currently registered with the platform."""

    @abstractmethod
    async def has_permission(self) -> bool:
        """Whether the platform allows scheduling notifications."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryNotificationPort(NotificationPort):
    """
    Dict-backed port.

    ``permission_granted`` and ``max_alarms`` mirror the platform behaviours
    the scheduler has to cope with; ``available=False`` makes every call
    raise ``NotificationPortError``.
    """

    def __init__(self, max_alarms: Optional[int] = None, permission_granted: bool = True):
        self.max_alarms = max_alarms
        self.permission_granted = permission_granted
        self.available = True
        self._alarms: Dict[str, Tuple[datetime, AlarmPayload, Optional[DailyRepeat]]] = {}

    def _check(self, operation: str, alarm_id: Optional[str] = None) -> None:
        if not self.available:
            raise NotificationPortError(
                message="In-memory port marked unavailable",
                alarm_id=alarm_id,
                operation=operation,
            )

    async def schedule(
        self,
        alarm_id: str,
        fire_at: datetime,
        payload: AlarmPayload,
        repeat: Optional[DailyRepeat] = None,
    ) -> None:
        self._check("schedule", alarm_id)
        if not self.permission_granted:
            raise NotificationPermissionError()
        if (
            self.max_alarms is not None
            and alarm_id not in self._alarms
            and len(self._alarms) >= self.max_alarms
        ):
            raise QuotaExceededError(limit=self.max_alarms, alarm_ids=[alarm_id])

        self._alarms[alarm_id] = (fire_at, payload, repeat)

    async def cancel(self, alarm_id: str) -> None:
        self._check("cancel", alarm_id)
        self._alarms.pop(alarm_id, None)

    async def list_scheduled(self) -> List[ScheduledAlarm]:
        self._check("list")
        return [
            ScheduledAlarm(alarm_id=alarm_id, fire_at=fire_at)
            for alarm_id, (fire_at, _, _) in sorted(self._alarms.items(), key=lambda i: i[1][0])
        ]

    async def has_permission(self) -> bool:
        self._check("permission")
        return self.permission_granted

    def payload_for(self, alarm_id: str) -> Optional[AlarmPayload]:
        entry = self._alarms.get(alarm_id)
        return entry[1] if entry else None

    def repeat_for(self, alarm_id: str) -> Optional[DailyRepeat]:
        entry = self._alarms.get(alarm_id)
        return entry[2] if entry else None


# =============================================================================
# APScheduler Backend
# =============================================================================

class APSchedulerNotificationPort(NotificationPort):
    """
    In-process port: every alarm is an APScheduler job whose id is the alarm id.

    Usage:
        port = APSchedulerNotificationPort(scheduler, delivery_callback=on_delivery)
        await port.schedule("med-1:08:00", fire_at, payload)
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        delivery_callback: Optional[DeliveryCallback] = None,
        max_scheduled: Optional[int] = None,
        timezone: Optional[pytz.BaseTzInfo] = None,
    ):
        """
        Args:
            scheduler: The AsyncIOScheduler owning the alarm jobs
            delivery_callback: Awaited with (alarm_id, payload) when a job runs
            max_scheduled: Optional cap on concurrently registered alarms
            timezone: Timezone for daily-repeat CronTriggers (default: scheduler's)
        """
        self.scheduler = scheduler
        self.delivery_callback = delivery_callback
        self.max_scheduled = max_scheduled
        self.timezone = timezone or scheduler.timezone

    def _alarm_jobs(self) -> List[Any]:
        return [job for job in self.scheduler.get_jobs() if "alarm_id" in job.kwargs]

    async def _deliver(self, alarm_id: str, payload: Dict[str, Any]) -> None:
        """Job function: hands the fired alarm to the delivery callback."""
        logger.info(f"Alarm fired: {alarm_id}")
        if self.delivery_callback is None:
            logger.warning(f"No delivery callback registered; alarm {alarm_id} dropped")
            return

        try:
            await self.delivery_callback(alarm_id, AlarmPayload.model_validate(payload))
        except Exception as e:
            logger.error(f"Delivery callback failed for alarm {alarm_id}: {e}", exc_info=True)

    async def schedule(
        self,
        alarm_id: str,
        fire_at: datetime,
        payload: AlarmPayload,
        repeat: Optional[DailyRepeat] = None,
    ) -> None:
        if self.max_scheduled is not None:
            existing = {job.id for job in self._alarm_jobs()}
            if alarm_id not in existing and len(existing) >= self.max_scheduled:
                raise QuotaExceededError(limit=self.max_scheduled, alarm_ids=[alarm_id])

        if repeat is None:
            trigger = DateTrigger(run_date=fire_at, timezone=self.timezone)
        else:
            trigger = CronTrigger(hour=repeat.hour, minute=repeat.minute, timezone=self.timezone)

        # Jobs added before start() sit in a pending list that is not de-duplicated
        if not self.scheduler.running:
            await self.cancel(alarm_id)

        try:
            self.scheduler.add_job(
                self._deliver,
                trigger,
                id=alarm_id,
                name=f"Alarm: {payload.title}",
                kwargs={"alarm_id": alarm_id, "payload": payload.model_dump()},
                replace_existing=True,
            )
        except Exception as e:
            logger.error(f"Failed to add alarm job {alarm_id}: {e}")
            raise NotificationPortError(
                message="Failed to register alarm job",
                alarm_id=alarm_id,
                operation="schedule",
                original_error=e,
            ) from e

        logger.debug(f"Registered alarm job {alarm_id} for {fire_at.isoformat()}")

    async def cancel(self, alarm_id: str) -> None:
        try:
            self.scheduler.remove_job(alarm_id)
            logger.debug(f"Removed alarm job: {alarm_id}")
        except JobLookupError:
            logger.debug(f"Alarm job {alarm_id} not found (already removed)")

    async def list_scheduled(self) -> List[ScheduledAlarm]:
        now = datetime.now(pytz.utc)
        alarms = []
        for job in self._alarm_jobs():
            if isinstance(job.trigger, DateTrigger):
                fire_at = job.trigger.run_date
            else:
                # Pending jobs have no next_run_time yet
                fire_at = getattr(job, "next_run_time", None) or job.trigger.get_next_fire_time(None, now)
            if fire_at is not None:
                alarms.append(ScheduledAlarm(alarm_id=job.id, fire_at=fire_at))
        return sorted(alarms, key=lambda a: a.fire_at)

    async def has_permission(self) -> bool:
        return True


# =============================================================================
# Inbound Events
# =============================================================================

class DeliveryEvent(BaseModel):
    """
    Raw platform event: ``{"alarmId": ..., "action": ..., "firedAt": ...}``.

    ``action`` is None when the alarm simply fired. ``firedAt`` accepts epoch
    milliseconds or an ISO-8601 string.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    alarm_id: str = Field(..., min_length=1)
    action: Optional[Literal["taken", "snooze", "skip"]] = None
    minutes: Optional[int] = Field(default=None, gt=0, description="Snooze length chosen by the user")
    fired_at: Optional[datetime] = None

    @field_validator("fired_at", mode="before")
    @classmethod
    def parse_epoch_ms(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return datetime.fromtimestamp(v / 1000, tz=pytz.utc)
        return v

    @field_validator("fired_at")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return pytz.utc.localize(v)
        return v

    def to_action(self, default_snooze_minutes: int) -> Optional[ReminderAction]:
        """The user action carried by this event, or None for a plain firing."""
        if self.action is None:
            return None
        kind = ActionKind(self.action)
        if kind == ActionKind.SNOOZE:
            return ReminderAction.snooze(self.minutes or default_snooze_minutes)
        return ReminderAction(kind=kind)
