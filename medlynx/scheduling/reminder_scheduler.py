"""
Reminder Scheduler - Alarm Reconciliation
=========================================

Derives the platform alarms of each medication reminder and keeps the
NotificationPort in line with the reminders in the store.

Alarm ids are deterministic:

    {reminderId}:{HH:MM}                      recurring slot
    {reminderId}:{HH:MM}:snoozed:{epochMs}    one-shot snooze of a slot

Per-reminder state:

    Unscheduled -> Scheduled -> Firing -> Scheduled
                                       -> Ended (isActive false / endDate passed)

A slot alarm is a one-shot registration of the next occurrence. It is not
repeated by the platform: after it fires, the slot is recomputed once the
user responds (ActionHandler) or, if configured, once the no-response grace
period expires. Edits, quiet hours and end dates therefore take effect at the
next occurrence.

Concurrency:
- All public operations for one reminder id run under a per-id asyncio.Lock,
  so an edit racing another edit (or a delete) cannot leave duplicate alarms.
- The store is the source of truth: syncs re-read the reminder under its lock
  and orphan cleanup re-checks the store before cancelling.
- Preferences are replaced wholesale, never mutated.

Every public operation returns an OperationResult; errors from the store and
the port are captured in it and never raised to the caller.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple, Union

import pytz
from pydantic import ValidationError as PydanticValidationError

from medlynx.config import EngineSettings
from medlynx.db.models.preferences import NotificationPreferences
from medlynx.db.models.reminder import AlarmPayload, MedicationReminder
from medlynx.scheduling.notifications import build_alarm_payload
from medlynx.scheduling.quiet_hours import is_suppressed, passes_frequency_filter
from medlynx.scheduling.triggers import localize_slot, next_occurrence, to_local
from medlynx.services.exceptions import (
    ErrorCategory,
    NotificationPermissionError,
    OperationResult,
    QuotaExceededError,
    ReminderEngineError,
    UnknownAlarmIdError,
    ValidationError,
)
from medlynx.services.notification_port import NotificationPort
from medlynx.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
ReminderInput = Union[MedicationReminder, Dict[str, Any]]


# =============================================================================
# Alarm Ids
# =============================================================================

SNOOZE_MARKER = "snoozed"

_ALARM_ID_RE = re.compile(
    r"^(?P<reminder_id>.+):(?P<time_of_day>\d{2}:\d{2})(?::snoozed:(?P<snoozed_at>\d+))?$"
)


@dataclass(frozen=True)
class AlarmRef:
    """Parsed alarm id."""
    reminder_id: str
    time_of_day: str
    snoozed_at_ms: Optional[int] = None

    @property
    def is_snooze(self) -> bool:
        return self.snoozed_at_ms is not None

    @property
    def slot_alarm_id(self) -> str:
        return slot_alarm_id(self.reminder_id, self.time_of_day)


def slot_alarm_id(reminder_id: str, time_of_day: str) -> str:
    return f"{reminder_id}:{time_of_day}"


def snooze_alarm_id(alarm_id: str, at: datetime) -> str:
    """Derived id of the one-shot snooze; ``at`` is encoded as epoch milliseconds."""
    ref = parse_alarm_id(alarm_id)
    slot_id = ref.slot_alarm_id if ref else alarm_id
    return f"{slot_id}:{SNOOZE_MARKER}:{int(at.timestamp() * 1000)}"


def parse_alarm_id(alarm_id: str) -> Optional[AlarmRef]:
    """Split an alarm id into its parts, or None if it is not one of ours."""
    match = _ALARM_ID_RE.match(alarm_id or "")
    if not match:
        return None
    snoozed_at = match.group("snoozed_at")
    return AlarmRef(
        reminder_id=match.group("reminder_id"),
        time_of_day=match.group("time_of_day"),
        snoozed_at_ms=int(snoozed_at) if snoozed_at is not None else None,
    )


# =============================================================================
# Reminder Scheduler
# =============================================================================

class ReminderScheduler:
    """
    Reconciles the desired alarm set of each reminder with the NotificationPort.

    Usage:
        scheduler = ReminderScheduler(port, store, preferences, settings)

        result = await scheduler.save_and_sync(reminder)
        if not result.success:
            logger.warning(result.error.to_dict())

        await scheduler.delete_reminder(reminder.id)
    """

    def __init__(
        self,
        port: NotificationPort,
        store: ReminderStore,
        preferences: Optional[NotificationPreferences] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            port: Platform notification capability
            store: Reminder persistence
            preferences: Notification preferences (default: app defaults)
            settings: Engine settings (default: from environment)
            clock: Returns the current aware datetime; injectable for tests
        """
        self.port = port
        self.store = store
        self.preferences = preferences or NotificationPreferences()
        self.settings = settings or EngineSettings()
        self.tz = self.settings.tz
        self._clock = clock or (lambda: datetime.now(pytz.utc))

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._permission: Optional[bool] = None
        self._permission_reported = False
        # alarm_id -> (fire_at, payload) as last registered by this instance
        self._registered: Dict[str, Tuple[datetime, AlarmPayload]] = {}
        self._grace_tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Helpers
    # =========================================================================

    def now(self) -> datetime:
        return to_local(self._clock(), self.tz)

    @asynccontextmanager
    async def _reminder_lock(self, reminder_id: str) -> AsyncIterator[None]:
        """
        Hold the lock of one reminder id.

        Locks are dropped once no task holds or waits for them, so only ids
        with operations in flight keep an entry.
        """
        lock = self._locks.setdefault(reminder_id, asyncio.Lock())
        self._lock_users[reminder_id] = self._lock_users.get(reminder_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[reminder_id] -= 1
            if self._lock_users[reminder_id] == 0:
                del self._lock_users[reminder_id]
                self._locks.pop(reminder_id, None)

    async def _guard(self, operation: str, coro) -> OperationResult:
        """Run an operation, turning any failure into a failed OperationResult."""
        try:
            return await coro
        except ReminderEngineError as e:
            logger.error(f"{operation} failed: {e}")
            return OperationResult.fail(e)
        except Exception as e:
            logger.error(f"{operation} failed unexpectedly: {e}", exc_info=True)
            return OperationResult.fail(
                ReminderEngineError(
                    message=f"{operation} failed",
                    category=ErrorCategory.INTERNAL,
                    original_error=e,
                )
            )

    def _validate(self, reminder: ReminderInput) -> MedicationReminder:
        """Re-validate a reminder (or parse a raw record) before any I/O."""
        try:
            if isinstance(reminder, MedicationReminder):
                return MedicationReminder.model_validate(reminder.model_dump())
            return MedicationReminder.model_validate(reminder)
        except PydanticValidationError as e:
            raise ValidationError(
                message=f"Invalid reminder: {e.errors()[0]['msg']}",
                context={"errors": e.error_count()},
                original_error=e,
            ) from e

    async def _check_permission(self) -> Optional[OperationResult]:
        """
        None when scheduling is allowed. Otherwise the result to return: a
        failure the first time the denial is seen, a no-op success afterwards.
        """
        if self._permission is None:
            self._permission = await self.port.has_permission()
        if self._permission:
            return None
        return self._permission_denied()

    def _permission_denied(self) -> OperationResult:
        self._permission = False
        if not self._permission_reported:
            self._permission_reported = True
            logger.warning("Notification permission not granted; scheduling disabled")
            return OperationResult.fail(NotificationPermissionError())
        return OperationResult.ok({"scheduling_disabled": True})

    async def _registered_ids(self, reminder_id: str) -> Set[str]:
        """Alarm ids owned by a reminder: the persisted map plus live registrations."""
        ids = set(await self.store.get_alarm_ids(reminder_id))
        for alarm in await self.port.list_scheduled():
            ref = parse_alarm_id(alarm.alarm_id)
            if ref and ref.reminder_id == reminder_id:
                ids.add(alarm.alarm_id)
        return ids

    async def _cancel_ids(self, alarm_ids) -> List[str]:
        cancelled = []
        for alarm_id in sorted(alarm_ids):
            await self.port.cancel(alarm_id)
            self._registered.pop(alarm_id, None)
            cancelled.append(alarm_id)
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} alarm(s): {', '.join(cancelled)}")
        return cancelled

    async def _register(self, alarm_id: str, fire_at: datetime, payload: AlarmPayload) -> bool:
        """
        Schedule an alarm unless the same registration is already live.

        Returns:
            True if the port was called
        """
        if self._registered.get(alarm_id) == (fire_at, payload):
            return False
        await self.port.schedule(alarm_id, fire_at, payload)
        self._registered[alarm_id] = (fire_at, payload)
        logger.info(f"Scheduled alarm {alarm_id} at {fire_at.isoformat()}")
        return True

    def _reference_time(self, reminder: MedicationReminder, now: datetime) -> datetime:
        """Now, or just before the start of ``start_date`` when that lies ahead."""
        start = localize_slot(reminder.start_date, 0, 0, self.tz) - timedelta(microseconds=1)
        return max(now, start)

    def _plan_slot(
        self,
        reminder: MedicationReminder,
        time_of_day: str,
        reference: datetime,
    ) -> Tuple[Optional[datetime], Optional[str]]:
        """
        Next fire time of one slot, or (None, reason) when it must not be registered.
        """
        if not passes_frequency_filter(reminder.priority, self.preferences.frequency_mode):
            return None, "frequency_filtered"
        if is_suppressed(time_of_day, self.preferences.quiet_hours):
            return None, "quiet_hours"

        fire_at = next_occurrence(reminder.recurrence, time_of_day, reference, self.tz)
        if reminder.end_date is not None and fire_at.date() > reminder.end_date:
            return None, "past_end_date"
        return fire_at, None

    def _is_ended(self, reminder: MedicationReminder, now: datetime) -> bool:
        return reminder.is_ended(now.date())

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self, reminder: ReminderInput) -> OperationResult:
        """
        Reconcile the alarms of one reminder.

        The stored record is authoritative: the reminder is re-read under its
        lock, so a copy that was edited or deleted meanwhile is not scheduled.

        - Deleted or ended reminders, and reminders disabled in preferences:
          every alarm of the reminder is cancelled.
        - Otherwise each time-of-day slot gets one alarm at its next
          occurrence. Slots in quiet hours are not registered. Alarms of
          slots that no longer exist are cancelled.

        On storage failure nothing is cancelled or scheduled.

        Returns:
            OperationResult with data: reminder_id, state, scheduled,
            unchanged, cancelled, skipped ({time_of_day: reason}), next_fire
        """
        try:
            reminder = self._validate(reminder)
        except ValidationError as e:
            logger.warning(f"Rejected reminder sync: {e}")
            return OperationResult.fail(e)

        async with self._reminder_lock(reminder.id):
            return await self._guard(f"sync({reminder.id})", self._sync_locked(reminder))

    async def _sync_locked(self, reminder: MedicationReminder) -> OperationResult:
        stored = await self.store.get_reminder(reminder.id)
        if stored is not None:
            reminder = stored

        now = self.now()
        registered = await self._registered_ids(reminder.id)

        if stored is None:
            state = "deleted"
        elif self._is_ended(reminder, now):
            state = "ended"
        elif not self.preferences.reminders_enabled:
            state = "disabled"
        else:
            state = None

        if state is not None:
            cancelled = await self._cancel_ids(registered)
            await self.store.set_alarm_ids(reminder.id, [])
            self._cancel_grace_for_reminder(reminder.id)
            logger.info(f"Reminder {reminder.id} {state}; {len(cancelled)} alarm(s) cancelled")
            return OperationResult.ok({
                "reminder_id": reminder.id,
                "state": state,
                "scheduled": [],
                "unchanged": [],
                "cancelled": cancelled,
                "skipped": {},
                "next_fire": {},
            })

        denied = await self._check_permission()
        if denied is not None:
            return denied

        reference = self._reference_time(reminder, now)
        desired: Dict[str, Tuple[str, datetime]] = {}
        skipped: Dict[str, str] = {}
        for time_of_day in reminder.times_of_day:
            fire_at, reason = self._plan_slot(reminder, time_of_day, reference)
            if fire_at is None:
                skipped[time_of_day] = reason
                logger.debug(f"Slot {reminder.id}:{time_of_day} not registered ({reason})")
                continue
            desired[slot_alarm_id(reminder.id, time_of_day)] = (time_of_day, fire_at)

        live = {a.alarm_id for a in await self.port.list_scheduled()}

        stale = set()
        kept_snoozes = set()
        for alarm_id in registered:
            ref = parse_alarm_id(alarm_id)
            if ref is None:
                stale.add(alarm_id)
            elif ref.is_snooze:
                if ref.time_of_day not in reminder.times_of_day:
                    stale.add(alarm_id)
                elif alarm_id in live:
                    kept_snoozes.add(alarm_id)
            elif alarm_id not in desired:
                stale.add(alarm_id)
        cancelled = await self._cancel_ids(stale)

        scheduled: List[str] = []
        unchanged: List[str] = []
        quota_blocked: List[str] = []
        for alarm_id, (time_of_day, fire_at) in desired.items():
            payload = build_alarm_payload(reminder, time_of_day)
            if alarm_id not in live:
                # Fired or removed by the platform
                self._registered.pop(alarm_id, None)
            try:
                if await self._register(alarm_id, fire_at, payload):
                    scheduled.append(alarm_id)
                else:
                    unchanged.append(alarm_id)
            except QuotaExceededError:
                quota_blocked.append(alarm_id)
            except NotificationPermissionError:
                await self.store.set_alarm_ids(reminder.id, scheduled + unchanged + sorted(kept_snoozes))
                return self._permission_denied()

        await self.store.set_alarm_ids(reminder.id, scheduled + unchanged + sorted(kept_snoozes))

        report = {
            "reminder_id": reminder.id,
            "state": "scheduled",
            "scheduled": scheduled,
            "unchanged": unchanged,
            "cancelled": cancelled,
            "skipped": skipped,
            "next_fire": {
                alarm_id: fire_at.isoformat()
                for alarm_id, (_, fire_at) in desired.items()
                if alarm_id not in quota_blocked
            },
        }

        if quota_blocked:
            logger.error(
                f"Alarm quota exceeded for reminder {reminder.id}; "
                f"not registered: {', '.join(quota_blocked)}"
            )
            return OperationResult(
                success=False,
                data=report,
                error=QuotaExceededError(alarm_ids=quota_blocked),
            )

        logger.info(
            f"Synced reminder {reminder.id}: {len(scheduled)} scheduled, "
            f"{len(unchanged)} unchanged, {len(cancelled)} cancelled, {len(skipped)} skipped"
        )
        return OperationResult.ok(report)

    async def save_and_sync(self, reminder: ReminderInput) -> OperationResult:
        """Persist a reminder (create or edit), then sync its alarms."""
        try:
            reminder = self._validate(reminder)
        except ValidationError as e:
            logger.warning(f"Rejected reminder save: {e}")
            return OperationResult.fail(e)

        async def _save() -> OperationResult:
            await self.store.upsert_reminder(reminder)
            return OperationResult.ok()

        async with self._reminder_lock(reminder.id):
            saved = await self._guard(f"save({reminder.id})", _save())
            if not saved.success:
                return saved
            return await self._guard(f"sync({reminder.id})", self._sync_locked(reminder))

    # =========================================================================
    # Cancellation / deletion
    # =========================================================================

    async def cancel_all(self, reminder_id: str) -> OperationResult:
        """Cancel every alarm (slot and snooze) of a reminder."""
        async with self._reminder_lock(reminder_id):
            return await self._guard(f"cancel_all({reminder_id})", self._cancel_all_locked(reminder_id))

    async def _cancel_all_locked(self, reminder_id: str) -> OperationResult:
        cancelled = await self._cancel_ids(await self._registered_ids(reminder_id))
        await self.store.set_alarm_ids(reminder_id, [])
        self._cancel_grace_for_reminder(reminder_id)
        return OperationResult.ok({"reminder_id": reminder_id, "cancelled": cancelled})

    async def delete_reminder(self, reminder_id: str) -> OperationResult:
        """
        Delete a reminder and cancel all of its alarms.

        The adherence log of the medication is kept.
        """
        async with self._reminder_lock(reminder_id):

            async def _delete() -> OperationResult:
                deleted = await self.store.delete_reminder(reminder_id)
                result = await self._cancel_all_locked(reminder_id)
                result.data["deleted"] = deleted
                return result

            return await self._guard(f"delete({reminder_id})", _delete())

    # =========================================================================
    # Single-slot operations
    # =========================================================================

    async def resolve_alarm(self, alarm_id: str) -> Tuple[AlarmRef, MedicationReminder]:
        """
        Map an alarm id to its reminder.

        Raises:
            UnknownAlarmIdError: Malformed id, deleted reminder or removed slot
        """
        ref = parse_alarm_id(alarm_id)
        if ref is None:
            raise UnknownAlarmIdError(alarm_id, reason="Malformed alarm id")

        reminder = await self.store.get_reminder(ref.reminder_id)
        if reminder is None:
            raise UnknownAlarmIdError(alarm_id, reason="Reminder no longer exists")
        if ref.time_of_day not in reminder.times_of_day:
            raise UnknownAlarmIdError(alarm_id, reason="Time slot no longer exists")
        return ref, reminder

    async def resync_slot(self, reminder_id: str, time_of_day: str) -> OperationResult:
        """Recompute and register the next occurrence of one slot."""
        async with self._reminder_lock(reminder_id):
            return await self._guard(
                f"resync_slot({reminder_id}:{time_of_day})",
                self._resync_slot_locked(reminder_id, time_of_day),
            )

    async def _resync_slot_locked(self, reminder_id: str, time_of_day: str) -> OperationResult:
        alarm_id = slot_alarm_id(reminder_id, time_of_day)
        _, reminder = await self.resolve_alarm(alarm_id)

        now = self.now()
        if self._is_ended(reminder, now) or not self.preferences.reminders_enabled:
            return await self._sync_locked(reminder)

        denied = await self._check_permission()
        if denied is not None:
            return denied

        alarm_ids = set(await self.store.get_alarm_ids(reminder_id))
        fire_at, reason = self._plan_slot(reminder, time_of_day, self._reference_time(reminder, now))

        if fire_at is None:
            await self._cancel_ids([alarm_id])
            alarm_ids.discard(alarm_id)
            await self.store.set_alarm_ids(reminder_id, sorted(alarm_ids))
            logger.info(f"Slot {alarm_id} not re-registered ({reason})")
            return OperationResult.ok({"alarm_id": alarm_id, "fire_at": None, "reason": reason})

        live = {a.alarm_id for a in await self.port.list_scheduled()}
        if alarm_id not in live:
            self._registered.pop(alarm_id, None)
        for existing in list(alarm_ids):
            ref = parse_alarm_id(existing)
            if ref and ref.is_snooze and ref.time_of_day == time_of_day and existing not in live:
                # Snooze already delivered
                alarm_ids.discard(existing)
                self._registered.pop(existing, None)
        try:
            await self._register(alarm_id, fire_at, build_alarm_payload(reminder, time_of_day))
        except NotificationPermissionError:
            return self._permission_denied()

        alarm_ids.add(alarm_id)
        await self.store.set_alarm_ids(reminder_id, sorted(alarm_ids))
        return OperationResult.ok({"alarm_id": alarm_id, "fire_at": fire_at.isoformat(), "reason": None})

    async def schedule_snooze(
        self,
        reminder: MedicationReminder,
        time_of_day: str,
        at: datetime,
        minutes: int,
    ) -> OperationResult:
        """
        Register the one-shot snooze of a slot ``minutes`` after ``at``, or
        after now when ``at`` already lies in the past.

        An earlier pending snooze of the same slot is replaced. Quiet hours do
        not apply to snoozes.
        """
        async with self._reminder_lock(reminder.id):
            return await self._guard(
                f"schedule_snooze({reminder.id}:{time_of_day})",
                self._schedule_snooze_locked(reminder, time_of_day, at, minutes),
            )

    async def _schedule_snooze_locked(
        self,
        reminder: MedicationReminder,
        time_of_day: str,
        at: datetime,
        minutes: int,
    ) -> OperationResult:
        denied = await self._check_permission()
        if denied is not None:
            return denied

        slot_id = slot_alarm_id(reminder.id, time_of_day)
        alarm_id = snooze_alarm_id(slot_id, at)
        # A late response snoozes from now, never into the past
        fire_at = max(to_local(at, self.tz), self.now()) + timedelta(minutes=minutes)

        registered = await self._registered_ids(reminder.id)
        earlier = []
        for existing in registered:
            ref = parse_alarm_id(existing)
            if existing != alarm_id and ref and ref.is_snooze and ref.time_of_day == time_of_day:
                earlier.append(existing)
        await self._cancel_ids(earlier)

        try:
            await self._register(alarm_id, fire_at, build_alarm_payload(reminder, time_of_day, snoozed=True))
        except NotificationPermissionError:
            return self._permission_denied()

        alarm_ids = (registered - set(earlier)) | {alarm_id}
        await self.store.set_alarm_ids(reminder.id, sorted(alarm_ids))
        return OperationResult.ok({"alarm_id": alarm_id, "fire_at": fire_at.isoformat()})

    # =========================================================================
    # Firing
    # =========================================================================

    async def on_fired(self, alarm_id: str, fired_at: Optional[datetime] = None) -> OperationResult:
        """
        Platform callback: an alarm was delivered.

        Nothing is rescheduled here; the slot is recomputed when the user
        responds. With ``no_response_grace_minutes`` set, the slot is advanced
        automatically if no response arrives in time. No adherence entry is
        written for a missing response.
        """
        try:
            ref, reminder = await self.resolve_alarm(alarm_id)
        except UnknownAlarmIdError as e:
            logger.warning(f"Discarding firing: {e}")
            return OperationResult.fail(e)
        except ReminderEngineError as e:
            logger.error(f"on_fired({alarm_id}) failed: {e}")
            return OperationResult.fail(e)

        when = to_local(fired_at, self.tz) if fired_at else self.now()
        logger.info(f"Alarm {alarm_id} fired for {reminder.medication_name} at {when.isoformat()}")

        grace = self.settings.no_response_grace_minutes
        if grace:
            self._start_grace_timer(alarm_id, ref)

        return OperationResult.ok({
            "alarm_id": alarm_id,
            "reminder_id": reminder.id,
            "time_of_day": ref.time_of_day,
            "snoozed": ref.is_snooze,
            "fired_at": when.isoformat(),
            "grace_minutes": grace,
        })

    def _grace_delay_seconds(self) -> float:
        return float(self.settings.no_response_grace_minutes or 0) * 60

    def _start_grace_timer(self, alarm_id: str, ref: AlarmRef) -> None:
        self.acknowledge(alarm_id)
        task = asyncio.get_running_loop().create_task(self._auto_advance(alarm_id, ref))
        self._grace_tasks[alarm_id] = task

    async def _auto_advance(self, alarm_id: str, ref: AlarmRef) -> None:
        await asyncio.sleep(self._grace_delay_seconds())
        self._grace_tasks.pop(alarm_id, None)
        logger.info(f"No response to {alarm_id}; advancing slot to its next occurrence")
        result = await self.resync_slot(ref.reminder_id, ref.time_of_day)
        if not result.success:
            logger.warning(f"Auto-advance of {alarm_id} failed: {result.error}")

    def acknowledge(self, alarm_id: str) -> None:
        """Stop the no-response timer of a fired alarm, if one is running."""
        task = self._grace_tasks.pop(alarm_id, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_grace_timers(self) -> None:
        for alarm_id in list(self._grace_tasks):
            self.acknowledge(alarm_id)

    def _cancel_grace_for_reminder(self, reminder_id: str) -> None:
        for alarm_id in list(self._grace_tasks):
            ref = parse_alarm_id(alarm_id)
            if ref and ref.reminder_id == reminder_id:
                self.acknowledge(alarm_id)

    # =========================================================================
    # Maintenance / preferences
    # =========================================================================

    async def sync_all(self) -> OperationResult:
        """
        Sync every stored reminder and cancel orphaned alarms.

        Run daily and after preference changes so quiet hours and end dates
        are re-evaluated.
        """

        async def _run() -> OperationResult:
            reminders = await self.store.list_reminders()
            known = {r.id for r in reminders}

            failed: Dict[str, Dict[str, Any]] = {}
            first_error: Optional[ReminderEngineError] = None
            for reminder in reminders:
                result = await self.sync(reminder)
                if not result.success:
                    failed[reminder.id] = result.error.to_dict() if result.error else {}
                    first_error = first_error or result.error

            candidates = set()
            for alarm in await self.port.list_scheduled():
                ref = parse_alarm_id(alarm.alarm_id)
                if ref and ref.reminder_id not in known:
                    candidates.add(ref.reminder_id)
            alarm_map = await self.store.list_alarm_map()
            candidates.update(rid for rid in alarm_map if rid not in known)

            # A candidate may have been saved since the snapshot; re-check under its lock
            orphans_cancelled: List[str] = []
            for reminder_id in sorted(candidates):
                async with self._reminder_lock(reminder_id):
                    if await self.store.get_reminder(reminder_id) is not None:
                        continue
                    result = await self._cancel_all_locked(reminder_id)
                    orphans_cancelled.extend(result.data["cancelled"])

            report = {
                "synced": len(reminders) - len(failed),
                "failed": failed,
                "orphans_cancelled": orphans_cancelled,
            }
            logger.info(
                f"Maintenance sync: {report['synced']} synced, {len(failed)} failed, "
                f"{len(orphans_cancelled)} orphan alarm(s) cancelled"
            )
            if first_error is not None:
                return OperationResult(success=False, data=report, error=first_error)
            return OperationResult.ok(report)

        return await self._guard("sync_all", _run())

    async def update_preferences(self, preferences: NotificationPreferences) -> OperationResult:
        """Persist and swap in new preferences, then re-sync everything."""

        async def _save() -> OperationResult:
            await self.store.save_preferences(preferences)
            return OperationResult.ok()

        saved = await self._guard("update_preferences", _save())
        if not saved.success:
            return saved

        self.preferences = preferences
        logger.info(
            f"Preferences updated (enabled={preferences.reminders_enabled}, "
            f"quiet={preferences.quiet_hours.start}-{preferences.quiet_hours.end} "
            f"[{'on' if preferences.quiet_hours.enabled else 'off'}], "
            f"mode={preferences.frequency_mode.value})"
        )
        return await self.sync_all()

    def refresh_permission(self) -> None:
        """Forget the cached permission state so the next sync asks the port again."""
        self._permission = None
        self._permission_reported = False
