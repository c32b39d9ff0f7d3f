"""
Action Handler
==============

Single entry point for user responses to delivered reminders, whatever
process state the platform delivered them in.

    Taken  -> log Taken,   advance the slot to its next occurrence
    Skip   -> log Skipped, advance the slot to its next occurrence
    Snooze -> log Snoozed, register one snooze alarm at max(at, now) + minutes

A snooze alarm offers Taken and Skip only. Snoozing a snooze is logged and
handled as Skip, so one firing can be deferred at most once.

Actions on alarms that no longer map to a reminder (deleted in the meantime,
or the slot was edited away) are logged and discarded.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from medlynx.db.models.reminder import (
    ActionKind,
    AdherenceLogEntry,
    AdherenceStatus,
    ReminderAction,
)
from medlynx.scheduling.reminder_scheduler import ReminderScheduler
from medlynx.scheduling.triggers import to_local
from medlynx.services.exceptions import (
    OperationResult,
    ReminderEngineError,
    UnknownAlarmIdError,
)
from medlynx.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

_STATUS_FOR_ACTION = {
    ActionKind.TAKEN: AdherenceStatus.TAKEN,
    ActionKind.SKIP: AdherenceStatus.SKIPPED,
    ActionKind.SNOOZE: AdherenceStatus.SNOOZED,
}


class ActionHandler:
    """
    Applies user actions to the adherence log and the alarm schedule.

    Usage:
        handler = ActionHandler(scheduler, store)
        await handler.handle("med-1:08:00", ReminderAction.snooze(10), at=now)
    """

    def __init__(self, scheduler: ReminderScheduler, store: Optional[ReminderStore] = None):
        self.scheduler = scheduler
        self.store = store or scheduler.store

    async def handle(
        self,
        alarm_id: str,
        action: ReminderAction,
        at: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Process one user action.

        Args:
            alarm_id: Id of the alarm the action was taken on
            action: Taken, Skip or Snooze(minutes)
            at: When the user acted (default: now)

        Returns:
            OperationResult with data: alarm_id, reminder_id, status, entry,
            next (resync or snooze details) and, for a refused chained
            snooze, downgraded_from
        """
        at = to_local(at, self.scheduler.tz) if at else self.scheduler.now()

        try:
            ref, reminder = await self.scheduler.resolve_alarm(alarm_id)
        except UnknownAlarmIdError as e:
            logger.warning(f"Discarding {action.kind.value} action: {e}")
            return OperationResult.fail(e)
        except ReminderEngineError as e:
            logger.error(f"Action on {alarm_id} failed: {e}")
            return OperationResult.fail(e)

        self.scheduler.acknowledge(alarm_id)

        data: Dict[str, Any] = {"alarm_id": alarm_id, "reminder_id": reminder.id}
        kind = action.kind
        if kind == ActionKind.SNOOZE and ref.is_snooze:
            logger.info(f"Alarm {alarm_id} was already snoozed once; recording Skip instead")
            kind = ActionKind.SKIP
            data["downgraded_from"] = ActionKind.SNOOZE.value

        entry = AdherenceLogEntry(
            medication_id=reminder.id,
            scheduled_time_of_day=ref.time_of_day,
            acted_at=at,
            status=_STATUS_FOR_ACTION[kind],
            alarm_id=alarm_id,
        )
        try:
            await self.store.append_adherence(entry)
        except ReminderEngineError as e:
            logger.error(f"Could not log {entry.status.value} for {alarm_id}: {e}")
            return OperationResult.fail(e)

        data["status"] = entry.status.value
        data["entry"] = entry.to_record()

        if kind == ActionKind.SNOOZE:
            follow_up = await self.scheduler.schedule_snooze(reminder, ref.time_of_day, at, action.minutes)
        else:
            follow_up = await self.scheduler.resync_slot(reminder.id, ref.time_of_day)

        data["next"] = follow_up.data
        if not follow_up.success:
            logger.warning(f"Action on {alarm_id} logged but rescheduling failed: {follow_up.error}")
            return OperationResult(success=False, data=data, error=follow_up.error)

        return OperationResult.ok(data)
