"""
Reminder Runtime
================

Wires the engine together for an in-process deployment:

    KeyValueStore (memory | redis)
        -> ReminderStore
    AsyncIOScheduler
        -> APSchedulerNotificationPort  (one job per alarm)
    ReminderScheduler + ActionHandler

Platform events arrive through ``dispatch()`` as raw dicts
``{"alarmId": ..., "action": "taken"|"snooze"|"skip"|None, "firedAt": epochMs}``
and are routed to ``ActionHandler.handle`` (action present) or
``ReminderScheduler.on_fired`` (plain firing). Alarm jobs fired by APScheduler
go through the same path.

A daily maintenance job re-syncs every reminder so quiet hours and end dates
are re-evaluated.

Usage:
    runtime = await initialize_reminder_runtime()
    await runtime.reminders.save_and_sync(reminder)
    ...
    await runtime.shutdown()
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError as PydanticValidationError

from medlynx.config import EngineSettings, configure_logging, load_settings
from medlynx.db.models.reminder import AlarmPayload
from medlynx.scheduling.action_handler import ActionHandler
from medlynx.scheduling.reminder_scheduler import Clock, ReminderScheduler
from medlynx.services.exceptions import (
    OperationResult,
    ReminderEngineError,
    ValidationError,
)
from medlynx.services.kv_store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
)
from medlynx.services.notification_port import APSchedulerNotificationPort, DeliveryEvent
from medlynx.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "reminder_maintenance"

PresentCallback = Callable[[str, AlarmPayload], Awaitable[Any]]


def build_kv_store(settings: EngineSettings) -> KeyValueStore:
    """Key-value backend selected by ``KV_BACKEND``."""
    if settings.kv_backend == "redis":
        return RedisKeyValueStore(url=settings.redis_url, key_prefix=settings.redis_key_prefix)
    return InMemoryKeyValueStore()


class ReminderRuntime:
    """
    Owns the APScheduler instance and the engine components.

    Usage:
        runtime = ReminderRuntime(settings, present=show_notification)
        await runtime.start()
        # ... app runs ...
        await runtime.shutdown()
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        kv: Optional[KeyValueStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        present: Optional[PresentCallback] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            settings: Engine settings (default: from environment)
            kv: Key-value backend (default: per ``settings.kv_backend``)
            scheduler: AsyncIOScheduler to use (default: a new one)
            present: Awaited with (alarm_id, payload) to show a fired alarm
            clock: Current-time source forwarded to ReminderScheduler
        """
        self.settings = settings or EngineSettings()
        self.kv = kv or build_kv_store(self.settings)
        self.store = ReminderStore(self.kv, tz=self.settings.tz)
        self.apscheduler = scheduler or AsyncIOScheduler(timezone=self.settings.tz)
        self.port = APSchedulerNotificationPort(
            self.apscheduler,
            delivery_callback=self._on_delivery,
            max_scheduled=self.settings.max_scheduled_alarms,
            timezone=self.settings.tz,
        )
        self.reminders = ReminderScheduler(
            self.port,
            self.store,
            settings=self.settings,
            clock=clock,
        )
        self.actions = ActionHandler(self.reminders, self.store)
        self.present = present
        self._started = False

        logger.info(
            f"ReminderRuntime initialized (timezone: {self.settings.timezone}, "
            f"kv: {self.settings.kv_backend})"
        )

    def _setup_jobs(self) -> None:
        self.apscheduler.add_job(
            self._run_maintenance_wrapper,
            CronTrigger(
                hour=self.settings.maintenance_hour,
                minute=self.settings.maintenance_minute,
                timezone=self.settings.tz,
            ),
            id=MAINTENANCE_JOB_ID,
            name="Daily Reminder Maintenance",
            replace_existing=True,
        )
        logger.info(
            f"Scheduled reminder maintenance for "
            f"{self.settings.maintenance_hour:02d}:{self.settings.maintenance_minute:02d} "
            f"{self.settings.timezone}"
        )

    async def _run_maintenance_wrapper(self) -> None:
        """Job function for the daily re-sync."""
        try:
            result = await self.reminders.sync_all()
            logger.info(f"Reminder maintenance result: {'ok' if result.success else 'failed'}")
        except Exception as e:
            logger.error(f"Reminder maintenance wrapper error: {e}", exc_info=True)

    async def _on_delivery(self, alarm_id: str, payload: AlarmPayload) -> None:
        """Delivery callback of the APScheduler port."""
        if self.present is not None:
            await self.present(alarm_id, payload)
        fired_at = datetime.now(pytz.utc)
        await self.dispatch({"alarmId": alarm_id, "action": None, "firedAt": int(fired_at.timestamp() * 1000)})

    async def start(self) -> OperationResult:
        """
        Load preferences, start APScheduler and restore every alarm.

        Returns:
            Result of the initial ``sync_all``
        """
        if self._started:
            logger.warning("ReminderRuntime already started")
            return OperationResult.ok({"already_started": True})

        try:
            self.reminders.preferences = await self.store.get_preferences()
        except ReminderEngineError as e:
            logger.error(f"Could not load preferences, using defaults: {e}")

        self._setup_jobs()
        self.apscheduler.start()
        self._started = True
        logger.info("ReminderRuntime started")

        return await self.reminders.sync_all()

    async def shutdown(self) -> None:
        """Stop APScheduler and release the key-value backend."""
        if not self._started:
            logger.warning("ReminderRuntime not running")
            return

        logger.info("Shutting down ReminderRuntime...")
        self.reminders.cancel_grace_timers()
        self.apscheduler.shutdown(wait=False)
        if isinstance(self.kv, RedisKeyValueStore):
            self.kv.close()
        self._started = False
        logger.info("ReminderRuntime stopped")

    def is_running(self) -> bool:
        return self._started and self.apscheduler.running

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Scheduled jobs (alarms and maintenance) with their next run times."""
        jobs = []
        for job in self.apscheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def dispatch(self, raw_event: Dict[str, Any]) -> OperationResult:
        """
        Route a raw platform event.

        Args:
            raw_event: ``{"alarmId", "action", "firedAt"}``; ``minutes`` may
                       carry a user-chosen snooze length

        Returns:
            OperationResult of on_fired or handle
        """
        try:
            event = DeliveryEvent.model_validate(raw_event)
        except PydanticValidationError as e:
            logger.warning(f"Ignoring malformed platform event {raw_event!r}: {e.error_count()} error(s)")
            return OperationResult.fail(
                ValidationError(message="Malformed platform event", field="event", original_error=e)
            )

        action = event.to_action(self.settings.default_snooze_minutes)
        if action is None:
            return await self.reminders.on_fired(event.alarm_id, event.fired_at)
        return await self.actions.handle(event.alarm_id, action, at=event.fired_at)


async def initialize_reminder_runtime(
    settings: Optional[EngineSettings] = None,
    **kwargs: Any,
) -> ReminderRuntime:
    """Build, configure logging for, and start a ReminderRuntime."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    runtime = ReminderRuntime(settings, **kwargs)
    await runtime.start()
    return runtime
