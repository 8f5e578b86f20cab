"""Recurring appointment series, booked all-or-nothing."""

import calendar
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.core.clock import Clock, SystemClock
from chroniccare.core.exceptions import ConflictException, ValidationException
from chroniccare.core.redis_client import CacheManager
from chroniccare.models.appointments import appointment_series
from chroniccare.schemas.appointments import AppointmentResponse, AppointmentStatus
from chroniccare.schemas.series import RecurrencePattern, SeriesCreate, SeriesMember, SeriesResponse
from chroniccare.services.appointment_service import (
    default_booking_locks,
    ensure_future_start,
    insert_appointment,
    schedule_booking_notifications,
)
from chroniccare.services.audit import AuditRecorder
from chroniccare.services.conflict_checker import BookingLocks, ConflictChecker
from chroniccare.services.directory_service import DirectoryService
from chroniccare.services.slot_finder import invalidate_slot_cache

logger = structlog.get_logger(__name__)

MAX_SERIES_MEMBERS = 104

_FIXED_STEPS = {
    RecurrencePattern.DAILY: timedelta(days=1),
    RecurrencePattern.WEEKLY: timedelta(weeks=1),
    RecurrencePattern.BIWEEKLY: timedelta(weeks=2),
}


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def expand_recurrence(
    pattern: RecurrencePattern,
    template: SeriesMember,
    occurrences: int | None = None,
    until: datetime | None = None,
) -> list[SeriesMember]:
    """
    Concrete members of a recurring series.

    Args:
        pattern: Recurrence pattern; ``custom`` cannot be expanded
        template: First occurrence
        occurrences: Number of members to generate
        until: Last instant a member may start at

    Returns:
        Members in chronological order, at most ``MAX_SERIES_MEMBERS``
    """
    if pattern == RecurrencePattern.CUSTOM:
        raise ValidationException(
            "Custom recurrence requires an explicit appointments list", field="recurrence_pattern"
        )

    limit = min(occurrences or MAX_SERIES_MEMBERS, MAX_SERIES_MEMBERS)
    members: list[SeriesMember] = []
    for index in range(limit):
        if pattern == RecurrencePattern.MONTHLY:
            start = add_months(template.scheduled_start, index)
        else:
            start = template.scheduled_start + _FIXED_STEPS[pattern] * index
        if until is not None and start > until:
            break
        members.append(template.model_copy(update={"scheduled_start": start}))
    return members


class SeriesService:
    """Books appointment series atomically."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock | None = None,
        cache: CacheManager | None = None,
        locks: BookingLocks | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.cache = cache
        self.locks = locks or default_booking_locks

    def _members(self, data: SeriesCreate) -> list[SeriesMember]:
        if data.appointments:
            return list(data.appointments)
        until = None
        if data.series_end_date is not None:
            until = datetime.combine(
                data.series_end_date, datetime.max.time(), tzinfo=data.template.scheduled_start.tzinfo
            )
        return expand_recurrence(data.recurrence_pattern, data.template, data.occurrences, until)

    def _validate_members(self, data: SeriesCreate, members: list[SeriesMember], now: datetime) -> None:
        if not members:
            raise ValidationException("Series has no appointments", field="appointments")
        for index, member in enumerate(members):
            ensure_future_start(member.scheduled_start, now, field=f"appointments.{index}.scheduled_start")
            day = member.scheduled_start.date()
            if day < data.series_start_date or (
                data.series_end_date is not None and day > data.series_end_date
            ):
                raise ValidationException(
                    "Appointment falls outside the series date range",
                    field=f"appointments.{index}.scheduled_start",
                    details={"member_index": index},
                )

    async def create_series(self, tenant_id: UUID, data: SeriesCreate) -> SeriesResponse:
        """
        Create a series and all of its appointments in one transaction.

        Every member is conflict-checked against existing bookings and against
        the members inserted before it. If any member fails, nothing is
        persisted. Each member gets its confirmation and reminders after commit.

        Args:
            tenant_id: Tenant scope
            data: Series definition

        Returns:
            The series with its appointments

        Raises:
            ValidationException: If a member is in the past or outside the series range
            NotFoundException: If patient, provider or facility is not under the tenant
            ConflictException: Naming the member index and the colliding appointment
        """
        now = self.clock.now()
        members = self._members(data)
        self._validate_members(data, members, now)

        directory = DirectoryService(self.db)
        created: list[dict] = []

        async with self.locks.hold(data.provider_id):
            try:
                await directory.get_patient(tenant_id, data.patient_id)
                await directory.get_facility(tenant_id, data.facility_id)
                checker = ConflictChecker(self.db)
                await checker.lock_provider(tenant_id, data.provider_id)

                result = await self.db.execute(
                    insert(appointment_series)
                    .values(
                        tenant_id=tenant_id,
                        patient_id=data.patient_id,
                        provider_id=data.provider_id,
                        facility_id=data.facility_id,
                        series_name=data.series_name,
                        recurrence_pattern=data.recurrence_pattern.value,
                        start_date=data.series_start_date,
                        end_date=data.series_end_date,
                        total_appointments=len(members),
                        completed_appointments=0,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                    .returning(appointment_series)
                )
                series = dict(result.mappings().one())

                for index, member in enumerate(members):
                    start = member.scheduled_start
                    end = start + timedelta(minutes=member.duration_minutes)
                    await checker.ensure_available(
                        data.provider_id, start, end, details={"member_index": index}
                    )
                    created.append(
                        await insert_appointment(
                            self.db,
                            {
                                "tenant_id": tenant_id,
                                "patient_id": data.patient_id,
                                "provider_id": data.provider_id,
                                "facility_id": data.facility_id,
                                "series_id": series["id"],
                                "appointment_type": member.appointment_type.value,
                                "scheduled_start": start,
                                "scheduled_end": end,
                                "duration_minutes": member.duration_minutes,
                                "status": AppointmentStatus.SCHEDULED.value,
                                "priority": member.priority.value,
                                "reason": member.reason,
                                "created_at": now,
                                "updated_at": now,
                            },
                        )
                    )
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.info("appointment_series_rejected", reason="storage_constraint")
                raise ConflictException(
                    "A series member collides with an existing appointment",
                    details={"member_index": len(created)},
                )
            except Exception:
                await self.db.rollback()
                raise

            await schedule_booking_notifications(self.db, created, now)

        logger.info(
            "appointment_series_created",
            series_id=str(series["id"]),
            appointments=len(created),
            recurrence_pattern=data.recurrence_pattern.value,
        )
        invalidate_slot_cache(self.cache, tenant_id)
        await AuditRecorder(self.db).record(
            tenant_id,
            "appointment_series",
            series["id"],
            "create",
            {"appointment_ids": [row["id"] for row in created]},
        )

        return SeriesResponse(
            **series,
            appointments=[AppointmentResponse.model_validate(row) for row in created],
        )
