"""
Reminder Store - Persistence Adapter
====================================

CRUD over medication reminders plus an append-only adherence log, backed by
the key-value capability in ``kv_store``.

Persisted layout (JSON strings):

    medication_reminders          -> [MedicationReminder record, ...]
    medication_log_{medicationId} -> [AdherenceLogEntry record, ...]
    adherence_log_index           -> [medicationId, ...] (ids with a log key)
    medication_alarms             -> {reminderId: [alarmId, ...]}
    notificationPreferences       -> NotificationPreferences record

Degraded-mode policy:
- An unreachable backend raises ``StorageUnavailableError`` to the caller.
- A payload that is not valid JSON, or an individual record that fails
  validation, is logged as a ``CorruptRecordError`` and treated as absent.
  Other records under the same key stay usable.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pytz
from pydantic import ValidationError as PydanticValidationError

from medlynx.config import USER_TIMEZONE, local_today
from medlynx.db.models.preferences import NotificationPreferences
from medlynx.db.models.reminder import (
    AdherenceLogEntry,
    AdherenceStatus,
    AdherenceSummary,
    MedicationReminder,
)
from medlynx.services.exceptions import CorruptRecordError
from medlynx.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

REMINDERS_KEY = "medication_reminders"
ADHERENCE_KEY_PREFIX = "medication_log_"
ADHERENCE_INDEX_KEY = "adherence_log_index"
ALARMS_KEY = "medication_alarms"
PREFERENCES_KEY = "notificationPreferences"


def adherence_key(medication_id: str) -> str:
    """Key holding the adherence log of one medication."""
    return f"{ADHERENCE_KEY_PREFIX}{medication_id}"


# =============================================================================
# Reminder Store
# =============================================================================

class ReminderStore:
    """
    Persistence adapter for reminders, adherence logs, the alarm map and
    notification preferences.

    Usage:
        store = ReminderStore(InMemoryKeyValueStore())
        await store.upsert_reminder(reminder)
        await store.append_adherence(entry)
        log = await store.get_adherence(reminder.id)
    """

    def __init__(self, kv: KeyValueStore, tz: Optional[pytz.BaseTzInfo] = None):
        """
        Args:
            kv: Key-value backend
            tz: Timezone that decides which calendar day is "today"
        """
        self.kv = kv
        self.tz = tz or USER_TIMEZONE
        # Serializes read-modify-write cycles on the shared JSON keys
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # Raw JSON helpers
    # =========================================================================

    def _report_corrupt(self, error: CorruptRecordError) -> None:
        logger.warning(f"{error} - treating as absent")

    async def _load_json(self, key: str, expected: type) -> Any:
        raw = await self.kv.get(key)
        if raw is None:
            return expected()

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            self._report_corrupt(
                CorruptRecordError(key=key, reason="payload is not valid JSON", original_error=e)
            )
            return expected()

        if not isinstance(payload, expected):
            self._report_corrupt(
                CorruptRecordError(key=key, reason=f"expected a JSON {expected.__name__}")
            )
            return expected()

        return payload

    async def _save_json(self, key: str, payload: Any) -> None:
        await self.kv.set(key, json.dumps(payload))

    def _parse_records(self, key: str, records: List[Any], model: type) -> List[Any]:
        parsed = []
        for index, record in enumerate(records):
            try:
                parsed.append(model.model_validate(record))
            except PydanticValidationError as e:
                self._report_corrupt(
                    CorruptRecordError(
                        key=key,
                        reason=f"record failed validation ({e.error_count()} errors)",
                        index=index,
                        original_error=e,
                    )
                )
        return parsed

    # =========================================================================
    # Reminders
    # =========================================================================

    async def list_reminders(self) -> List[MedicationReminder]:
        """All stored reminders, including inactive and ended ones."""
        records = await self._load_json(REMINDERS_KEY, list)
        return self._parse_records(REMINDERS_KEY, records, MedicationReminder)

    async def get_reminder(self, reminder_id: str) -> Optional[MedicationReminder]:
        for reminder in await self.list_reminders():
            if reminder.id == reminder_id:
                return reminder
        return None

    async def list_active_reminders(self, on: Optional[date] = None) -> List[MedicationReminder]:
        """
        Reminders that are active and not past their end date.

        Args:
            on: Reference day (default: today in the store timezone)
        """
        day = on or local_today(self.tz)
        return [r for r in await self.list_reminders() if not r.is_ended(day)]

    async def upsert_reminder(self, reminder: MedicationReminder) -> MedicationReminder:
        """Insert the reminder, or replace the stored one with the same id."""
        async with self._write_lock:
            reminders = await self.list_reminders()
            for index, existing in enumerate(reminders):
                if existing.id == reminder.id:
                    reminders[index] = reminder
                    action = "Updated"
                    break
            else:
                reminders.append(reminder)
                action = "Created"

            await self._save_json(REMINDERS_KEY, [r.to_record() for r in reminders])

        logger.info(f"{action} reminder {reminder.id} ({reminder.medication_name})")
        return reminder

    async def delete_reminder(self, reminder_id: str) -> bool:
        """
        Remove a reminder record. Its adherence log is kept.

        Returns:
            True if a reminder was removed
        """
        async with self._write_lock:
            reminders = await self.list_reminders()
            remaining = [r for r in reminders if r.id != reminder_id]
            if len(remaining) == len(reminders):
                logger.debug(f"Reminder {reminder_id} not found (already deleted)")
                return False

            await self._save_json(REMINDERS_KEY, [r.to_record() for r in remaining])

        logger.info(f"Deleted reminder {reminder_id}")
        return True

    # =========================================================================
    # Adherence log (append-only)
    # =========================================================================

    async def append_adherence(self, entry: AdherenceLogEntry) -> None:
        """Append one entry. Existing entries are written back unchanged."""
        key = adherence_key(entry.medication_id)
        async with self._write_lock:
            records = await self._load_json(key, list)
            records.append(entry.to_record())
            await self._save_json(key, records)

            index = await self._load_json(ADHERENCE_INDEX_KEY, list)
            if entry.medication_id not in index:
                index.append(entry.medication_id)
                await self._save_json(ADHERENCE_INDEX_KEY, index)

        logger.info(
            f"Logged {entry.status.value} for {entry.medication_id} "
            f"slot {entry.scheduled_time_of_day}"
        )

    async def get_adherence(self, medication_id: str) -> List[AdherenceLogEntry]:
        """Adherence entries for a medication in insertion order."""
        key = adherence_key(medication_id)
        records = await self._load_json(key, list)
        return self._parse_records(key, records, AdherenceLogEntry)

    async def adherence_summary(
        self,
        medication_id: str,
        since: Optional[datetime] = None,
    ) -> AdherenceSummary:
        """
        Count responses for a medication.

        Args:
            medication_id: The medication (reminder) id
            since: Only count entries acted on at or after this instant
        """
        summary = AdherenceSummary(medication_id=medication_id)
        for entry in await self.get_adherence(medication_id):
            if since is not None and entry.acted_at < since:
                continue
            if entry.status == AdherenceStatus.TAKEN:
                summary.taken += 1
            elif entry.status == AdherenceStatus.SNOOZED:
                summary.snoozed += 1
            else:
                summary.skipped += 1
        return summary

    # =========================================================================
    # Alarm map (alarm id <-> reminder association)
    # =========================================================================

    async def list_alarm_map(self) -> Dict[str, List[str]]:
        alarm_map = await self._load_json(ALARMS_KEY, dict)
        cleaned: Dict[str, List[str]] = {}
        for reminder_id, alarm_ids in alarm_map.items():
            if isinstance(alarm_ids, list) and all(isinstance(a, str) for a in alarm_ids):
                cleaned[reminder_id] = alarm_ids
            else:
                self._report_corrupt(
                    CorruptRecordError(key=ALARMS_KEY, reason=f"bad alarm list for {reminder_id}")
                )
        return cleaned

    async def get_alarm_ids(self, reminder_id: str) -> List[str]:
        return (await self.list_alarm_map()).get(reminder_id, [])

    async def set_alarm_ids(self, reminder_id: str, alarm_ids: List[str]) -> None:
        """Replace the registered alarm ids of a reminder. An empty list drops the entry."""
        async with self._write_lock:
            alarm_map = await self.list_alarm_map()
            if alarm_ids:
                alarm_map[reminder_id] = sorted(set(alarm_ids))
            else:
                alarm_map.pop(reminder_id, None)
            await self._save_json(ALARMS_KEY, alarm_map)

    # =========================================================================
    # Preferences
    # =========================================================================

    async def get_preferences(self) -> NotificationPreferences:
        """Stored preferences, or the defaults when absent or corrupt."""
        record = await self._load_json(PREFERENCES_KEY, dict)
        if not record:
            return NotificationPreferences()
        try:
            return NotificationPreferences.model_validate(record)
        except PydanticValidationError as e:
            self._report_corrupt(
                CorruptRecordError(key=PREFERENCES_KEY, reason="preferences failed validation", original_error=e)
            )
            return NotificationPreferences()

    async def save_preferences(self, preferences: NotificationPreferences) -> None:
        await self._save_json(PREFERENCES_KEY, preferences.to_record())
        logger.info("Saved notification preferences")

    # =========================================================================
    # Full data clear
    # =========================================================================

    async def clear_all_data(self) -> int:
        """
        Remove reminders, adherence logs, the alarm map and preferences.

        This is the only operation that deletes adherence entries.

        Returns:
            Number of keys removed
        """
        async with self._write_lock:
            medication_ids = {r.id for r in await self.list_reminders()}
            medication_ids.update((await self.list_alarm_map()).keys())
            # Logs outlive their reminders; the index still names them
            medication_ids.update(
                mid for mid in await self._load_json(ADHERENCE_INDEX_KEY, list) if isinstance(mid, str)
            )

            keys = [REMINDERS_KEY, ALARMS_KEY, PREFERENCES_KEY, ADHERENCE_INDEX_KEY]
            keys.extend(adherence_key(mid) for mid in sorted(medication_ids))
            for key in keys:
                await self.kv.remove(key)

        logger.warning(f"Cleared all reminder data ({len(keys)} keys)")
        return len(keys)
