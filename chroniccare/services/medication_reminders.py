"""Medication dose and refill reminders."""

import re
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.core.clock import Clock, SystemClock, get_zone
from chroniccare.core.exceptions import NotFoundException, ValidationException
from chroniccare.models.medications import medications
from chroniccare.models.notifications import notifications
from chroniccare.schemas.notifications import DeliveryStatus, MedicationReminderResult, NotificationType
from chroniccare.services.directory_service import DirectoryService
from chroniccare.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)

MAX_REMINDERS = 500
DOSE_REMINDER_PRIORITY = 6
REFILL_REMINDER_PRIORITY = 7
REFILL_LEAD_DAYS = 7
DEFAULT_REMINDER_TIME = time(9, 0)


class ReminderFrequency(str, Enum):
    ONCE_DAILY = "once_daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    EVERY_8_HOURS = "every_8_hours"
    EVERY_6_HOURS = "every_6_hours"
    EVERY_4_HOURS = "every_4_hours"
    AS_NEEDED = "as_needed"


FREQUENCY_TIMES: dict[ReminderFrequency, tuple[time, ...]] = {
    ReminderFrequency.ONCE_DAILY: (time(9),),
    ReminderFrequency.TWICE_DAILY: (time(9), time(21)),
    ReminderFrequency.THREE_TIMES_DAILY: (time(9), time(15), time(21)),
    ReminderFrequency.FOUR_TIMES_DAILY: (time(9), time(13), time(17), time(21)),
    ReminderFrequency.EVERY_8_HOURS: (time(8), time(16), time(0)),
    ReminderFrequency.EVERY_6_HOURS: (time(8), time(14), time(20), time(2)),
    ReminderFrequency.EVERY_4_HOURS: (time(8), time(12), time(16), time(20), time(0), time(4)),
    ReminderFrequency.AS_NEEDED: (),
}

FREQUENCY_ALIASES: dict[str, ReminderFrequency] = {
    "once daily": ReminderFrequency.ONCE_DAILY,
    "once a day": ReminderFrequency.ONCE_DAILY,
    "daily": ReminderFrequency.ONCE_DAILY,
    "qd": ReminderFrequency.ONCE_DAILY,
    "twice daily": ReminderFrequency.TWICE_DAILY,
    "twice a day": ReminderFrequency.TWICE_DAILY,
    "bid": ReminderFrequency.TWICE_DAILY,
    "three times daily": ReminderFrequency.THREE_TIMES_DAILY,
    "three times a day": ReminderFrequency.THREE_TIMES_DAILY,
    "tid": ReminderFrequency.THREE_TIMES_DAILY,
    "four times daily": ReminderFrequency.FOUR_TIMES_DAILY,
    "four times a day": ReminderFrequency.FOUR_TIMES_DAILY,
    "qid": ReminderFrequency.FOUR_TIMES_DAILY,
    "every 8 hours": ReminderFrequency.EVERY_8_HOURS,
    "q8h": ReminderFrequency.EVERY_8_HOURS,
    "every 6 hours": ReminderFrequency.EVERY_6_HOURS,
    "q6h": ReminderFrequency.EVERY_6_HOURS,
    "every 4 hours": ReminderFrequency.EVERY_4_HOURS,
    "q4h": ReminderFrequency.EVERY_4_HOURS,
    "as needed": ReminderFrequency.AS_NEEDED,
    "prn": ReminderFrequency.AS_NEEDED,
}


def normalise_frequency(frequency: str | None) -> ReminderFrequency | None:
    """Look a free-text frequency up in the alias table; None when unmatched."""
    if not frequency:
        return None
    key = re.sub(r"[\s_\-]+", " ", frequency.strip().lower())
    return FREQUENCY_ALIASES.get(key)


def _parse_time(value: str) -> time:
    hour, _, minute = str(value).partition(":")
    return time(int(hour), int(minute or 0))


def reminder_times(frequency: str | None, schedule_details: dict[str, Any] | None = None) -> tuple[time, ...]:
    """
    Local times of day at which a dose reminder is sent.

    Explicit ``schedule_details["times"]`` win over the frequency. Unknown
    frequencies get a single morning reminder.

    Raises:
        ValidationException: If an explicit time is malformed
    """
    explicit = (schedule_details or {}).get("times")
    if isinstance(explicit, list) and explicit:
        try:
            return tuple(_parse_time(value) for value in explicit)
        except ValueError:
            raise ValidationException("Invalid reminder time in schedule_details", field="schedule_details.times")

    normalised = normalise_frequency(frequency)
    if normalised is None:
        return (DEFAULT_REMINDER_TIME,)
    return FREQUENCY_TIMES[normalised]


def reminder_horizon(medication: dict[str, Any]) -> date:
    """Last calendar day that receives dose reminders."""
    start: date = medication["start_date"]
    if medication.get("end_date"):
        return medication["end_date"]
    if medication.get("days_supply"):
        return start + timedelta(days=medication["days_supply"])
    if medication.get("is_ongoing"):
        return start + timedelta(days=90)
    return start + timedelta(days=30)


class MedicationReminderPlanner:
    """Creates notification records for medication doses and refills."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()

    async def _get_medication(self, tenant_id: UUID, medication_id: UUID) -> dict[str, Any]:
        result = await self.db.execute(
            select(medications).where(
                and_(medications.c.id == medication_id, medications.c.tenant_id == tenant_id)
            )
        )
        row = result.mappings().first()
        if row is None:
            raise NotFoundException("Medication not found", "medication", medication_id)
        return dict(row)

    def _values(
        self,
        medication: dict[str, Any],
        notification_type: NotificationType,
        priority: int,
        send_at: datetime,
        now: datetime,
        template_data: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "tenant_id": medication["tenant_id"],
            "patient_id": medication["patient_id"],
            "medication_id": medication["id"],
            "notification_type": notification_type.value,
            "priority": priority,
            "scheduled_send_time": send_at,
            "delivery_status": DeliveryStatus.PENDING.value,
            "template_data": template_data,
            "created_at": now,
            "updated_at": now,
        }

    async def schedule_reminders(self, tenant_id: UUID, medication_id: UUID) -> MedicationReminderResult:
        """
        (Re)build the reminder schedule of an active medication.

        Pending reminders from an earlier run are superseded first, so calling
        this again after a change does not duplicate reminders. Times are the
        patient's local wall-clock times.

        Args:
            tenant_id: Tenant scope
            medication_id: Medication id

        Returns:
            Number of dose reminders and whether a refill reminder was created

        Raises:
            NotFoundException: If the medication is not under the tenant
            ValidationException: If the medication is not active
        """
        now = self.clock.now()
        medication = await self._get_medication(tenant_id, medication_id)
        if medication["status"] != "active":
            raise ValidationException(
                f"Cannot schedule reminders for a {medication['status']} medication", field="status"
            )

        patient = await DirectoryService(self.db).get_patient(tenant_id, medication["patient_id"])
        zone = get_zone(patient.get("timezone"))
        times = reminder_times(medication.get("frequency"), medication.get("schedule_details"))
        horizon = reminder_horizon(medication)

        await self.db.execute(
            update(notifications)
            .where(
                and_(
                    notifications.c.tenant_id == tenant_id,
                    notifications.c.medication_id == medication_id,
                    notifications.c.delivery_status == DeliveryStatus.PENDING.value,
                    notifications.c.notification_type.in_(
                        [
                            NotificationType.MEDICATION_REMINDER.value,
                            NotificationType.MEDICATION_REFILL_REMINDER.value,
                        ]
                    ),
                )
            )
            .values(
                delivery_status=DeliveryStatus.SUPERSEDED.value,
                delivery_details={"superseded_at": now.isoformat(), "reason": "reminders_rebuilt"},
                updated_at=now,
            )
        )

        dose_data = {
            "medication_name": medication["medication_name"],
            "dosage": medication.get("dosage"),
        }
        scheduled = 0
        day = medication["start_date"]
        while day <= horizon and scheduled < MAX_REMINDERS:
            for slot in times:
                send_at = datetime.combine(day, slot, tzinfo=zone)
                if send_at <= now:
                    continue
                await NotificationService._insert(
                    self.db,
                    self._values(
                        medication,
                        NotificationType.MEDICATION_REMINDER,
                        DOSE_REMINDER_PRIORITY,
                        send_at,
                        now,
                        dose_data,
                    ),
                )
                scheduled += 1
                if scheduled >= MAX_REMINDERS:
                    break
            day += timedelta(days=1)

        refill_scheduled = False
        if medication.get("days_supply") and medication["refills_remaining"] > 0:
            refill_day = medication["start_date"] + timedelta(
                days=medication["days_supply"] - REFILL_LEAD_DAYS
            )
            refill_at = datetime.combine(refill_day, DEFAULT_REMINDER_TIME, tzinfo=zone)
            if refill_at > now:
                await NotificationService._insert(
                    self.db,
                    self._values(
                        medication,
                        NotificationType.MEDICATION_REFILL_REMINDER,
                        REFILL_REMINDER_PRIORITY,
                        refill_at,
                        now,
                        {
                            "medication_name": medication["medication_name"],
                            "refills_remaining": medication["refills_remaining"],
                        },
                    ),
                )
                refill_scheduled = True

        await self.db.commit()

        logger.info(
            "medication_reminders_scheduled",
            medication_id=str(medication_id),
            reminders=scheduled,
            refill_reminder=refill_scheduled,
        )
        return MedicationReminderResult(
            medication_id=medication_id,
            reminders_scheduled=scheduled,
            refill_reminder_scheduled=refill_scheduled,
        )
