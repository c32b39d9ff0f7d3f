"""
Tests for Action Handler
========================

BDD-style tests for user responses to delivered reminders.
Run with: pytest tests/test_action_handler.py -v

Tests cover:
1. Taken / Skip log an entry and advance the slot
2. Snooze logs an entry and registers one snooze alarm
3. Snooze of a snooze is handled as Skip
4. Actions on deleted reminders or removed slots are discarded
5. Storage failures while logging
"""

import os
import sys
from datetime import date, datetime, timedelta

import pytest
import pytz

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from medlynx.config import EngineSettings
from medlynx.db.models.reminder import AdherenceStatus, MedicationReminder, ReminderAction
from medlynx.scheduling.action_handler import ActionHandler
from medlynx.scheduling.reminder_scheduler import ReminderScheduler, parse_alarm_id
from medlynx.services.exceptions import StorageUnavailableError, UnknownAlarmIdError
from medlynx.services.kv_store import InMemoryKeyValueStore
from medlynx.services.notification_port import InMemoryNotificationPort
from medlynx.services.reminder_store import ReminderStore


# =============================================================================
# Fixtures
# =============================================================================

CHICAGO = pytz.timezone("America/Chicago")


def local(year, month, day, hour=0, minute=0):
    return CHICAGO.localize(datetime(year, month, day, hour, minute))


class FixedClock:

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    # Alarm for 08:00 just fired
    return FixedClock(local(2026, 6, 2, 8, 1))


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv):
    return ReminderStore(kv)


@pytest.fixture
def port():
    return InMemoryNotificationPort()


@pytest.fixture
def scheduler(port, store, clock):
    return ReminderScheduler(port, store, settings=EngineSettings(timezone="America/Chicago"), clock=clock)


@pytest.fixture
def handler(scheduler, store):
    return ActionHandler(scheduler, store)


@pytest.fixture
def reminder():
    return MedicationReminder(
        id="med-1",
        medication_name="Metformin",
        dosage="500mg",
        times_of_day=["08:00", "20:00"],
        start_date=date(2026, 6, 1),
    )


async def fired_slot(scheduler, port, reminder):
    """Save the reminder, then consume the 08:00 one-shot as the platform would."""
    await scheduler.save_and_sync(reminder)
    await port.cancel("med-1:08:00")


async def scheduled_map(port):
    return {a.alarm_id: a.fire_at for a in await port.list_scheduled()}


# =============================================================================
# Taken / Skip
# =============================================================================

class TestTakenAndSkip:
    """
    Scenario: User marks a dose as taken
      Given the 08:00 alarm fired
      When the user taps Taken at 08:05
      Then a Taken entry is logged for 08:00
      And the 08:00 slot is registered for tomorrow
    """

    @pytest.mark.asyncio
    async def test_taken_logs_and_advances(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)
        at = local(2026, 6, 2, 8, 5)

        result = await handler.handle("med-1:08:00", ReminderAction.taken(), at=at)

        assert result.success
        assert result.data["status"] == "taken"
        log = await store.get_adherence("med-1")
        assert len(log) == 1
        assert log[0].status == AdherenceStatus.TAKEN
        assert log[0].scheduled_time_of_day == "08:00"
        assert log[0].acted_at == at
        assert (await scheduled_map(port))["med-1:08:00"] == local(2026, 6, 3, 8, 0)

    @pytest.mark.asyncio
    async def test_skip_logs_skipped(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)

        result = await handler.handle("med-1:08:00", ReminderAction.skip())

        assert result.data["status"] == "skipped"
        assert [e.status for e in await store.get_adherence("med-1")] == [AdherenceStatus.SKIPPED]
        assert "med-1:08:00" in await scheduled_map(port)

    @pytest.mark.asyncio
    async def test_default_time_is_now(self, handler, scheduler, port, store, reminder, clock):
        await fired_slot(scheduler, port, reminder)

        await handler.handle("med-1:08:00", ReminderAction.taken())

        assert (await store.get_adherence("med-1"))[0].acted_at == clock()

    @pytest.mark.asyncio
    async def test_other_slots_untouched(self, handler, scheduler, port, reminder):
        await fired_slot(scheduler, port, reminder)
        before = (await scheduled_map(port))["med-1:20:00"]

        await handler.handle("med-1:08:00", ReminderAction.taken())

        assert (await scheduled_map(port))["med-1:20:00"] == before

    @pytest.mark.asyncio
    async def test_taken_on_snooze_alarm_clears_it(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)
        snoozed = await handler.handle("med-1:08:00", ReminderAction.snooze(10))
        snooze_id = snoozed.data["next"]["alarm_id"]
        await port.cancel(snooze_id)

        result = await handler.handle(snooze_id, ReminderAction.taken())

        assert result.success
        statuses = [e.status for e in await store.get_adherence("med-1")]
        assert statuses == [AdherenceStatus.SNOOZED, AdherenceStatus.TAKEN]
        assert set(await scheduled_map(port)) == {"med-1:08:00", "med-1:20:00"}


# =============================================================================
# Snooze
# =============================================================================

class TestSnooze:
    """
    Scenario: User snoozes a reminder
      Given the 08:00 alarm fired
      When the user snoozes for 10 minutes at 08:01
      Then a Snoozed entry is logged
      And exactly one snooze alarm fires at 08:11
    """

    @pytest.mark.asyncio
    async def test_snooze_registers_one_alarm(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)

        result = await handler.handle("med-1:08:00", ReminderAction.snooze(10), at=local(2026, 6, 2, 8, 1))

        assert result.success
        assert [e.status for e in await store.get_adherence("med-1")] == [AdherenceStatus.SNOOZED]

        snoozes = [a for a in await port.list_scheduled() if parse_alarm_id(a.alarm_id).is_snooze]
        assert len(snoozes) == 1
        assert snoozes[0].fire_at == local(2026, 6, 2, 8, 11)
        assert port.payload_for(snoozes[0].alarm_id).data["snoozable"] is False

    @pytest.mark.asyncio
    async def test_snooze_of_snooze_becomes_skip(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)
        first = await handler.handle("med-1:08:00", ReminderAction.snooze(10))
        snooze_id = first.data["next"]["alarm_id"]
        await port.cancel(snooze_id)

        result = await handler.handle(snooze_id, ReminderAction.snooze(10))

        assert result.success
        assert result.data["downgraded_from"] == "snooze"
        assert result.data["status"] == "skipped"
        statuses = [e.status for e in await store.get_adherence("med-1")]
        assert statuses == [AdherenceStatus.SNOOZED, AdherenceStatus.SKIPPED]
        assert not any(parse_alarm_id(a.alarm_id).is_snooze for a in await port.list_scheduled())

    @pytest.mark.asyncio
    async def test_entry_records_alarm_id(self, handler, scheduler, port, store, reminder):
        await fired_slot(scheduler, port, reminder)

        await handler.handle("med-1:08:00", ReminderAction.snooze(5))

        assert (await store.get_adherence("med-1"))[0].alarm_id == "med-1:08:00"

    @pytest.mark.asyncio
    async def test_late_snooze_counts_from_now(self, handler, scheduler, port, reminder, clock):
        """
        Scenario: A snooze is relayed long after the alarm fired
          Given the 08:00 alarm fired
          When a snooze(10) stamped 08:00 is handled at 08:30
          Then the snooze alarm fires at 08:40, not in the past
        """
        await fired_slot(scheduler, port, reminder)
        clock.advance(minutes=29)

        result = await handler.handle("med-1:08:00", ReminderAction.snooze(10), at=local(2026, 6, 2, 8, 0))

        assert result.success
        snoozes = [a for a in await port.list_scheduled() if parse_alarm_id(a.alarm_id).is_snooze]
        assert len(snoozes) == 1
        assert snoozes[0].fire_at == local(2026, 6, 2, 8, 40)


# =============================================================================
# Unknown alarms and failures
# =============================================================================

class TestDiscardedActions:

    @pytest.mark.asyncio
    async def test_action_after_delete_is_discarded(self, handler, scheduler, store, reminder):
        await scheduler.save_and_sync(reminder)
        await scheduler.delete_reminder("med-1")

        result = await handler.handle("med-1:08:00", ReminderAction.taken())

        assert not result.success
        assert isinstance(result.error, UnknownAlarmIdError)
        assert await store.get_adherence("med-1") == []

    @pytest.mark.asyncio
    async def test_action_on_removed_slot_is_discarded(self, handler, scheduler, store, reminder):
        await scheduler.save_and_sync(reminder)
        await scheduler.save_and_sync(reminder.model_copy(update={"times_of_day": ["20:00"]}))

        result = await handler.handle("med-1:08:00", ReminderAction.taken())

        assert isinstance(result.error, UnknownAlarmIdError)
        assert await store.get_adherence("med-1") == []

    @pytest.mark.asyncio
    async def test_malformed_alarm_id(self, handler):
        result = await handler.handle("garbage", ReminderAction.skip())
        assert isinstance(result.error, UnknownAlarmIdError)

    @pytest.mark.asyncio
    async def test_storage_down_nothing_rescheduled(self, handler, scheduler, port, kv, reminder):
        await fired_slot(scheduler, port, reminder)
        kv.available = False

        result = await handler.handle("med-1:08:00", ReminderAction.taken())

        assert not result.success
        assert isinstance(result.error, StorageUnavailableError)
        assert "med-1:08:00" not in await scheduled_map(port)

    @pytest.mark.asyncio
    async def test_action_stops_grace_timer(self, port, store, clock, reminder):
        settings = EngineSettings(timezone="America/Chicago", no_response_grace_minutes=30)
        scheduler = ReminderScheduler(port, store, settings=settings, clock=clock)
        handler = ActionHandler(scheduler)
        await fired_slot(scheduler, port, reminder)

        await scheduler.on_fired("med-1:08:00")
        assert "med-1:08:00" in scheduler._grace_tasks

        await handler.handle("med-1:08:00", ReminderAction.taken())

        assert "med-1:08:00" not in scheduler._grace_tasks


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
