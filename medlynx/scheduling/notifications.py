"""
Alarm payload formatting for medication reminders.
"""

from medlynx.db.models.reminder import AlarmPayload, MedicationReminder

REMINDER_TITLE = "💊 Medication Reminder"
SNOOZED_TITLE = "💊 Medication Reminder (snoozed)"
NOTIFICATION_TYPE = "medication_reminder"

# Platform banners cut long bodies; keep instructions short
INSTRUCTIONS_PREVIEW_CHARS = 80


def format_reminder_body(reminder: MedicationReminder) -> str:
    """
    Build the notification body.

    Example:
        "Time to take your Metformin (500mg)\\nTake with food"
    """
    msg = f"Time to take your {reminder.medication_name}"
    if reminder.dosage:
        msg += f" ({reminder.dosage})"

    instructions = (reminder.instructions or "").strip()
    if instructions:
        if len(instructions) > INSTRUCTIONS_PREVIEW_CHARS:
            instructions = instructions[:INSTRUCTIONS_PREVIEW_CHARS] + "..."
        msg += f"\n{instructions}"
    return msg


def build_alarm_payload(
    reminder: MedicationReminder,
    time_of_day: str,
    snoozed: bool = False,
) -> AlarmPayload:
    """
    Payload for one slot alarm.

    A snoozed alarm is marked ``snoozable: False`` so the platform only offers
    Taken and Skip on it.
    """
    return AlarmPayload(
        title=SNOOZED_TITLE if snoozed else REMINDER_TITLE,
        body=format_reminder_body(reminder),
        data={
            "medicationId": reminder.id,
            "type": NOTIFICATION_TYPE,
            "timeOfDay": time_of_day,
            "priority": reminder.priority.value,
            "snoozable": not snoozed,
        },
    )
