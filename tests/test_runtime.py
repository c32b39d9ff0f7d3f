"""
Tests for the Reminder Runtime
==============================

Integration tests wiring ReminderStore, the APScheduler port,
ReminderScheduler and ActionHandler together.
Run with: pytest tests/test_runtime.py -v

Tests cover:
1. Startup: maintenance job, preference loading, alarm restore
2. dispatch(): plain firings, actions, malformed events
3. Delivery callback of APScheduler alarm jobs
4. Shutdown
"""

import os
import sys
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytz

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from medlynx.config import EngineSettings
from medlynx.db.models.preferences import NotificationPreferences
from medlynx.db.models.reminder import AdherenceStatus, MedicationReminder
from medlynx.scheduling.runtime import (
    MAINTENANCE_JOB_ID,
    ReminderRuntime,
    build_kv_store,
    initialize_reminder_runtime,
)
from medlynx.services.exceptions import UnknownAlarmIdError, ValidationError
from medlynx.services.kv_store import InMemoryKeyValueStore, RedisKeyValueStore


# =============================================================================
# Fixtures
# =============================================================================

CHICAGO = pytz.timezone("America/Chicago")


def local(year, month, day, hour=0, minute=0):
    return CHICAGO.localize(datetime(year, month, day, hour, minute))


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class FixedClock:

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(local(2030, 6, 3, 7, 30))


@pytest.fixture
def settings():
    return EngineSettings(timezone="America/Chicago", default_snooze_minutes=15)


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def runtime(settings, kv, clock):
    return ReminderRuntime(settings, kv=kv, clock=clock)


@pytest.fixture
def reminder():
    return MedicationReminder(
        id="med-1",
        medication_name="Metformin",
        dosage="500mg",
        times_of_day=["08:00", "20:00"],
        start_date=date(2030, 6, 1),
    )


async def scheduled_map(runtime):
    return {a.alarm_id: a.fire_at for a in await runtime.port.list_scheduled()}


# =============================================================================
# Startup / shutdown
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_adds_maintenance_job(self, runtime):
        result = await runtime.start()
        try:
            assert result.success
            assert runtime.is_running()
            job_ids = [job["id"] for job in runtime.get_jobs()]
            assert MAINTENANCE_JOB_ID in job_ids
        finally:
            await runtime.shutdown()

        assert not runtime.is_running()

    @pytest.mark.asyncio
    async def test_start_restores_stored_reminders(self, runtime, reminder):
        await runtime.store.upsert_reminder(reminder)

        result = await runtime.start()
        try:
            assert result.data["synced"] == 1
            assert await scheduled_map(runtime) == {
                "med-1:08:00": local(2030, 6, 3, 8, 0),
                "med-1:20:00": local(2030, 6, 3, 20, 0),
            }
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_start_loads_preferences(self, runtime, reminder):
        prefs = NotificationPreferences(reminders_enabled=False)
        await runtime.store.save_preferences(prefs)
        await runtime.store.upsert_reminder(reminder)

        await runtime.start()
        try:
            assert runtime.reminders.preferences == prefs
            assert await runtime.port.list_scheduled() == []
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_double_start(self, runtime):
        await runtime.start()
        try:
            again = await runtime.start()
            assert again.data == {"already_started": True}
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_when_not_running_is_noop(self, runtime):
        await runtime.shutdown()
        assert not runtime.is_running()

    @pytest.mark.asyncio
    async def test_maintenance_wrapper_never_raises(self, runtime):
        with patch.object(runtime.reminders, "sync_all", AsyncMock(side_effect=RuntimeError("boom"))):
            await runtime._run_maintenance_wrapper()

    @pytest.mark.asyncio
    async def test_initialize_reminder_runtime(self, settings, clock):
        runtime = await initialize_reminder_runtime(settings, kv=InMemoryKeyValueStore(), clock=clock)
        try:
            assert runtime.is_running()
        finally:
            await runtime.shutdown()


class TestBuildKvStore:

    def test_memory_backend(self):
        assert isinstance(build_kv_store(EngineSettings()), InMemoryKeyValueStore)

    def test_redis_backend_is_lazy(self):
        kv = build_kv_store(EngineSettings(kv_backend="redis", redis_key_prefix="t:"))
        assert isinstance(kv, RedisKeyValueStore)
        assert kv._client is None


# =============================================================================
# Dispatch
# =============================================================================

class TestDispatch:
    """
    Scenario: Platform events reach the engine
      Given a started runtime with a saved reminder
      When the platform reports a firing or a user action
      Then the event is routed to on_fired or the action handler
    """

    @pytest.mark.asyncio
    async def test_plain_firing(self, runtime, reminder):
        await runtime.start()
        try:
            await runtime.reminders.save_and_sync(reminder)

            result = await runtime.dispatch({
                "alarmId": "med-1:08:00",
                "action": None,
                "firedAt": epoch_ms(local(2030, 6, 3, 8, 0)),
            })

            assert result.success
            assert result.data["time_of_day"] == "08:00"
            assert await runtime.store.get_adherence("med-1") == []
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_taken_action(self, runtime, reminder, clock):
        await runtime.start()
        try:
            await runtime.reminders.save_and_sync(reminder)
            await runtime.port.cancel("med-1:08:00")
            clock.advance(minutes=35)

            result = await runtime.dispatch({
                "alarmId": "med-1:08:00",
                "action": "taken",
                "firedAt": epoch_ms(local(2030, 6, 3, 8, 5)),
            })

            assert result.success
            log = await runtime.store.get_adherence("med-1")
            assert [e.status for e in log] == [AdherenceStatus.TAKEN]
            assert log[0].acted_at == local(2030, 6, 3, 8, 5)
            assert (await scheduled_map(runtime))["med-1:08:00"] == local(2030, 6, 4, 8, 0)
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_snooze_uses_default_minutes(self, runtime, reminder):
        await runtime.start()
        try:
            await runtime.reminders.save_and_sync(reminder)

            result = await runtime.dispatch({
                "alarmId": "med-1:08:00",
                "action": "snooze",
                "firedAt": epoch_ms(local(2030, 6, 3, 8, 1)),
            })

            assert result.success
            snooze_id = result.data["next"]["alarm_id"]
            assert (await scheduled_map(runtime))[snooze_id] == local(2030, 6, 3, 8, 16)
        finally:
            await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_snooze_with_explicit_minutes(self, runtime, reminder):
        await runtime.reminders.save_and_sync(reminder)

        result = await runtime.dispatch({
            "alarmId": "med-1:08:00",
            "action": "snooze",
            "minutes": 30,
            "firedAt": epoch_ms(local(2030, 6, 3, 8, 1)),
        })

        snooze_id = result.data["next"]["alarm_id"]
        assert (await scheduled_map(runtime))[snooze_id] == local(2030, 6, 3, 8, 31)

    @pytest.mark.asyncio
    async def test_malformed_event(self, runtime):
        result = await runtime.dispatch({"action": "taken"})

        assert not result.success
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_unknown_alarm(self, runtime):
        result = await runtime.dispatch({"alarmId": "gone:08:00", "action": "skip"})
        assert isinstance(result.error, UnknownAlarmIdError)


# =============================================================================
# Delivery callback
# =============================================================================

class TestDelivery:

    @pytest.mark.asyncio
    async def test_delivery_presents_and_dispatches(self, settings, kv, clock, reminder):
        present = AsyncMock()
        runtime = ReminderRuntime(settings, kv=kv, present=present, clock=clock)
        await runtime.reminders.save_and_sync(reminder)
        job = runtime.apscheduler.get_job("med-1:08:00")

        with patch.object(runtime, "dispatch", AsyncMock()) as dispatch:
            await job.func(**job.kwargs)

        present.assert_awaited_once()
        alarm_id, payload = present.await_args.args
        assert alarm_id == "med-1:08:00"
        assert "Metformin" in payload.body
        event = dispatch.await_args.args[0]
        assert event["alarmId"] == "med-1:08:00"
        assert event["action"] is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
