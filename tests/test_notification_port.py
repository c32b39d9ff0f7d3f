"""
Tests for Notification Ports
============================

Run with: pytest tests/test_notification_port.py -v

Tests cover:
1. In-memory port: replace semantics, idempotent cancel, quota, permission
2. APScheduler port: one job per alarm id, triggers, listing, delivery
3. DeliveryEvent decoding of raw platform events
"""

import os
import sys
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from pydantic import ValidationError as PydanticValidationError

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from medlynx.db.models.reminder import ActionKind, AlarmPayload, DailyRepeat
from medlynx.services.exceptions import (
    ErrorCategory,
    NotificationPermissionError,
    NotificationPortError,
    QuotaExceededError,
)
from medlynx.services.notification_port import (
    APSchedulerNotificationPort,
    DeliveryEvent,
    InMemoryNotificationPort,
)


# =============================================================================
# Fixtures
# =============================================================================

CHICAGO = pytz.timezone("America/Chicago")


@pytest.fixture
def payload():
    return AlarmPayload(
        title="💊 Medication Reminder",
        body="Time to take your Metformin (500mg)",
        data={"medicationId": "med-1", "type": "medication_reminder"},
    )


@pytest.fixture
def fire_at():
    return CHICAGO.localize(datetime(2030, 6, 3, 8, 0))


@pytest.fixture
def later():
    return CHICAGO.localize(datetime(2030, 6, 4, 8, 0))


@pytest.fixture
def apscheduler():
    return AsyncIOScheduler(timezone=CHICAGO)


# =============================================================================
# In-memory port
# =============================================================================

class TestInMemoryNotificationPort:

    @pytest.mark.asyncio
    async def test_schedule_same_id_replaces(self, payload, fire_at, later):
        port = InMemoryNotificationPort()

        await port.schedule("med-1:08:00", fire_at, payload)
        await port.schedule("med-1:08:00", later, payload)

        scheduled = await port.list_scheduled()
        assert [(a.alarm_id, a.fire_at) for a in scheduled] == [("med-1:08:00", later)]

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_noop(self):
        port = InMemoryNotificationPort()
        await port.cancel("missing")
        assert await port.list_scheduled() == []

    @pytest.mark.asyncio
    async def test_quota_blocks_new_ids_only(self, payload, fire_at, later):
        port = InMemoryNotificationPort(max_alarms=1)
        await port.schedule("a:08:00", fire_at, payload)

        with pytest.raises(QuotaExceededError) as exc_info:
            await port.schedule("b:08:00", fire_at, payload)
        assert exc_info.value.category == ErrorCategory.QUOTA

        # Replacing an existing registration does not count against the cap
        await port.schedule("a:08:00", later, payload)

    @pytest.mark.asyncio
    async def test_permission_denied(self, payload, fire_at):
        port = InMemoryNotificationPort(permission_granted=False)

        assert await port.has_permission() is False
        with pytest.raises(NotificationPermissionError):
            await port.schedule("a:08:00", fire_at, payload)

    @pytest.mark.asyncio
    async def test_unavailable(self):
        port = InMemoryNotificationPort()
        port.available = False
        with pytest.raises(NotificationPortError):
            await port.list_scheduled()

    @pytest.mark.asyncio
    async def test_listing_is_sorted_by_fire_time(self, payload, fire_at, later):
        port = InMemoryNotificationPort()
        await port.schedule("late:08:00", later, payload)
        await port.schedule("early:08:00", fire_at, payload)

        assert [a.alarm_id for a in await port.list_scheduled()] == ["early:08:00", "late:08:00"]


# =============================================================================
# APScheduler port
# =============================================================================

class TestAPSchedulerNotificationPort:

    @pytest.mark.asyncio
    async def test_schedule_adds_date_trigger_job(self, apscheduler, payload, fire_at):
        port = APSchedulerNotificationPort(apscheduler)

        await port.schedule("med-1:08:00", fire_at, payload)

        job = apscheduler.get_job("med-1:08:00")
        assert job is not None
        assert isinstance(job.trigger, DateTrigger)
        assert job.kwargs["alarm_id"] == "med-1:08:00"

    @pytest.mark.asyncio
    async def test_reschedule_before_start_keeps_one_job(self, apscheduler, payload, fire_at, later):
        port = APSchedulerNotificationPort(apscheduler)

        await port.schedule("med-1:08:00", fire_at, payload)
        await port.schedule("med-1:08:00", later, payload)

        scheduled = await port.list_scheduled()
        assert [(a.alarm_id, a.fire_at) for a in scheduled] == [("med-1:08:00", later)]

    @pytest.mark.asyncio
    async def test_reschedule_while_running_keeps_one_job(self, apscheduler, payload, fire_at, later):
        port = APSchedulerNotificationPort(apscheduler)
        apscheduler.start(paused=True)
        try:
            await port.schedule("med-1:08:00", fire_at, payload)
            await port.schedule("med-1:08:00", later, payload)

            assert len(apscheduler.get_jobs()) == 1
            scheduled = await port.list_scheduled()
            assert scheduled[0].fire_at == later
        finally:
            apscheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_daily_repeat_uses_cron_trigger(self, apscheduler, payload, fire_at):
        port = APSchedulerNotificationPort(apscheduler)

        await port.schedule("med-1:08:00", fire_at, payload, repeat=DailyRepeat(hour=8, minute=0))

        job = apscheduler.get_job("med-1:08:00")
        assert isinstance(job.trigger, CronTrigger)
        scheduled = await port.list_scheduled()
        local_fire = scheduled[0].fire_at.astimezone(CHICAGO)
        assert (local_fire.hour, local_fire.minute) == (8, 0)

    @pytest.mark.asyncio
    async def test_cancel_and_cancel_unknown(self, apscheduler, payload, fire_at):
        port = APSchedulerNotificationPort(apscheduler)
        await port.schedule("med-1:08:00", fire_at, payload)

        await port.cancel("med-1:08:00")
        await port.cancel("med-1:08:00")

        assert await port.list_scheduled() == []

    @pytest.mark.asyncio
    async def test_listing_ignores_non_alarm_jobs(self, apscheduler, payload, fire_at):
        async def maintenance():
            return None

        apscheduler.add_job(maintenance, CronTrigger(hour=3, timezone=CHICAGO), id="reminder_maintenance")
        port = APSchedulerNotificationPort(apscheduler)
        await port.schedule("med-1:08:00", fire_at, payload)

        assert [a.alarm_id for a in await port.list_scheduled()] == ["med-1:08:00"]

    @pytest.mark.asyncio
    async def test_quota(self, apscheduler, payload, fire_at):
        port = APSchedulerNotificationPort(apscheduler, max_scheduled=1)
        await port.schedule("a:08:00", fire_at, payload)

        with pytest.raises(QuotaExceededError):
            await port.schedule("b:08:00", fire_at, payload)

    @pytest.mark.asyncio
    async def test_deliver_invokes_callback(self, apscheduler, payload):
        callback = AsyncMock()
        port = APSchedulerNotificationPort(apscheduler, delivery_callback=callback)

        await port._deliver("med-1:08:00", payload.model_dump())

        callback.assert_awaited_once_with("med-1:08:00", payload)

    @pytest.mark.asyncio
    async def test_deliver_swallows_callback_errors(self, apscheduler, payload):
        callback = AsyncMock(side_effect=RuntimeError("boom"))
        port = APSchedulerNotificationPort(apscheduler, delivery_callback=callback)

        await port._deliver("med-1:08:00", payload.model_dump())

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_has_permission(self, apscheduler):
        assert await APSchedulerNotificationPort(apscheduler).has_permission() is True


# =============================================================================
# Platform events
# =============================================================================

class TestDeliveryEvent:

    def test_plain_firing(self):
        event = DeliveryEvent.model_validate(
            {"alarmId": "med-1:08:00", "action": None, "firedAt": 1780491600000}
        )
        assert event.alarm_id == "med-1:08:00"
        assert event.to_action(10) is None
        assert event.fired_at == datetime.fromtimestamp(1780491600, tz=pytz.utc)

    def test_iso_fired_at(self):
        event = DeliveryEvent.model_validate(
            {"alarmId": "a:08:00", "action": "taken", "firedAt": "2026-06-02T13:00:00+00:00"}
        )
        assert event.fired_at == pytz.utc.localize(datetime(2026, 6, 2, 13, 0))
        assert event.to_action(10).kind == ActionKind.TAKEN

    def test_snooze_uses_default_minutes(self):
        event = DeliveryEvent.model_validate({"alarmId": "a:08:00", "action": "snooze"})
        action = event.to_action(10)
        assert (action.kind, action.minutes) == (ActionKind.SNOOZE, 10)

    def test_snooze_with_explicit_minutes(self):
        event = DeliveryEvent.model_validate({"alarmId": "a:08:00", "action": "snooze", "minutes": 30})
        assert event.to_action(10).minutes == 30

    def test_unknown_action_rejected(self):
        with pytest.raises(PydanticValidationError):
            DeliveryEvent.model_validate({"alarmId": "a:08:00", "action": "dismiss"})

    def test_missing_alarm_id_rejected(self):
        with pytest.raises(PydanticValidationError):
            DeliveryEvent.model_validate({"action": "taken"})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
