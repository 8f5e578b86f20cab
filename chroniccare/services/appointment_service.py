"""Appointment lifecycle: booking, rescheduling and status transitions."""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.core.clock import Clock, SystemClock
from chroniccare.core.exceptions import ConflictException, NotFoundException, ValidationException
from chroniccare.core.redis_client import CacheManager
from chroniccare.models.appointments import appointments
from chroniccare.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentUpdate,
)
from chroniccare.schemas.notifications import NotificationType
from chroniccare.services.appointment_status import (
    RESCHEDULABLE_STATUSES,
    STATUS_TIMESTAMPS,
    ensure_transition,
)
from chroniccare.services.audit import AuditRecorder
from chroniccare.services.conflict_checker import BookingLocks, ConflictChecker
from chroniccare.services.directory_service import DirectoryService
from chroniccare.services.notification_service import TIME_BOUND_TYPES, NotificationService
from chroniccare.services.slot_finder import invalidate_slot_cache

logger = structlog.get_logger(__name__)

default_booking_locks = BookingLocks()

# Fields an update may write directly, without going through reschedule or a transition
DIRECT_UPDATE_FIELDS = (
    "priority",
    "reason",
    "special_requirements",
    "pre_appointment_instructions",
)


def ensure_future_start(start: datetime, now: datetime, field: str = "scheduled_start") -> None:
    """
    Reject appointment starts that are not in the future.

    Raises:
        ValidationException: If ``start`` is at or before ``now``
    """
    if start <= now:
        raise ValidationException("Appointment start must be in the future", field=field)


async def insert_appointment(db: AsyncSession, values: dict[str, Any]) -> dict[str, Any]:
    """Insert an appointment row and return it."""
    result = await db.execute(insert(appointments).values(**values).returning(appointments))
    return dict(result.mappings().one())


async def conflict_from_integrity_error(
    db: AsyncSession,
    provider_id: UUID,
    start: datetime,
    end: datetime,
    exclude_appointment_id: UUID | None = None,
) -> ConflictException:
    """
    Translate a storage-level uniqueness or exclusion violation.

    Must be called after the failed transaction was rolled back.
    """
    conflicting_id = await ConflictChecker(db).find_conflict(
        provider_id, start, end, exclude_appointment_id
    )
    return ConflictException(
        "Provider already has an appointment during the requested time",
        conflicting_id=conflicting_id,
    )


async def schedule_booking_notifications(
    db: AsyncSession,
    rows: list[dict[str, Any]],
    now: datetime,
) -> None:
    """Create confirmation and reminders for committed bookings without failing them."""
    try:
        for row in rows:
            await NotificationService.schedule_appointment_notifications(db, row, now)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(
            "failed_to_schedule_appointment_notifications",
            appointment_ids=[str(row["id"]) for row in rows],
            error=str(e),
        )


class AppointmentService:
    """Service for managing the appointment lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock | None = None,
        cache: CacheManager | None = None,
        locks: BookingLocks | None = None,
    ):
        """
        Initialize service.

        Args:
            db: Database session
            clock: Time source
            cache: Slot cache to invalidate on changes
            locks: Per-provider booking locks shared by the process
        """
        self.db = db
        self.clock = clock or SystemClock()
        self.cache = cache
        self.locks = locks or default_booking_locks
        self.directory = DirectoryService(db)
        self.audit = AuditRecorder(db)

    async def create_appointment(
        self,
        tenant_id: UUID,
        data: AppointmentCreate,
    ) -> AppointmentResponse:
        """
        Book a new appointment.

        The conflict check and the insert run in one transaction while the
        provider is locked. Notification scheduling happens after commit and
        cannot undo the booking.

        Args:
            tenant_id: Tenant scope
            data: Appointment creation data

        Returns:
            Created appointment in status ``scheduled``

        Raises:
            ValidationException: If the start is not in the future
            NotFoundException: If patient, provider or facility is not under the tenant
            ConflictException: If the provider is already booked in the interval
        """
        now = self.clock.now()
        ensure_future_start(data.scheduled_start, now)
        start = data.scheduled_start
        end = start + timedelta(minutes=data.duration_minutes)

        async with self.locks.hold(data.provider_id):
            try:
                await self.directory.get_patient(tenant_id, data.patient_id)
                await self.directory.get_facility(tenant_id, data.facility_id)
                checker = ConflictChecker(self.db)
                await checker.lock_provider(tenant_id, data.provider_id)
                await checker.ensure_available(data.provider_id, start, end)

                row = await insert_appointment(
                    self.db,
                    {
                        "tenant_id": tenant_id,
                        "patient_id": data.patient_id,
                        "provider_id": data.provider_id,
                        "facility_id": data.facility_id,
                        "appointment_type": data.appointment_type.value,
                        "scheduled_start": start,
                        "scheduled_end": end,
                        "duration_minutes": data.duration_minutes,
                        "status": AppointmentStatus.SCHEDULED.value,
                        "priority": data.priority.value,
                        "reason": data.reason,
                        "special_requirements": data.special_requirements,
                        "pre_appointment_instructions": data.pre_appointment_instructions,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                raise await conflict_from_integrity_error(self.db, data.provider_id, start, end)
            except Exception:
                await self.db.rollback()
                raise

            await schedule_booking_notifications(self.db, [row], now)

        logger.info(
            "appointment_created",
            appointment_id=str(row["id"]),
            provider_id=str(row["provider_id"]),
            scheduled_start=start.isoformat(),
        )
        invalidate_slot_cache(self.cache, tenant_id)
        await self.audit.record(
            tenant_id,
            "appointment",
            row["id"],
            "create",
            {"scheduled_start": start, "duration_minutes": data.duration_minutes},
        )
        return AppointmentResponse.model_validate(row)

    async def _get_row(self, tenant_id: UUID, appointment_id: UUID, lock: bool = False) -> dict:
        stmt = select(appointments).where(
            and_(appointments.c.id == appointment_id, appointments.c.tenant_id == tenant_id)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if row is None:
            raise NotFoundException("Appointment not found", "appointment", appointment_id)
        return dict(row)

    async def _update_row(self, appointment_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(**values)
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        return dict(result.mappings().one())

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found under the tenant
        """
        return AppointmentResponse.model_validate(await self._get_row(tenant_id, appointment_id))

    async def list_appointments(
        self,
        tenant_id: UUID,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Args:
            tenant_id: Tenant scope
            filters: Filter and pagination parameters

        Returns:
            Paginated list of appointments ordered by start time
        """
        conditions = [appointments.c.tenant_id == tenant_id]

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)
        if filters.provider_id:
            conditions.append(appointments.c.provider_id == filters.provider_id)
        if filters.facility_id:
            conditions.append(appointments.c.facility_id == filters.facility_id)
        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)
        if filters.from_date:
            conditions.append(appointments.c.scheduled_start >= filters.from_date)
        if filters.to_date:
            conditions.append(appointments.c.scheduled_start <= filters.to_date)

        count_stmt = select(func.count()).select_from(appointments).where(and_(*conditions))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_start)
            .limit(filters.page_size)
            .offset((filters.page - 1) * filters.page_size)
        )
        result = await self.db.execute(stmt)

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=[AppointmentResponse.model_validate(dict(r)) for r in result.mappings().all()],
        )

    async def reschedule_appointment(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        new_start: datetime,
        duration_minutes: int | None = None,
    ) -> AppointmentResponse:
        """
        Move an appointment to a new time.

        Args:
            tenant_id: Tenant scope
            appointment_id: Appointment to move
            new_start: New start instant
            duration_minutes: New duration; keeps the current one when omitted

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found under the tenant
            ValidationException: If the appointment can no longer be moved
            ConflictException: If the new interval collides with another booking
        """
        now = self.clock.now()
        ensure_future_start(new_start, now)
        current = await self._get_row(tenant_id, appointment_id)
        provider_id = current["provider_id"]

        async with self.locks.hold(provider_id):
            try:
                checker = ConflictChecker(self.db)
                await checker.lock_provider(tenant_id, provider_id)
                row = await self._get_row(tenant_id, appointment_id, lock=True)
                if AppointmentStatus(row["status"]) not in RESCHEDULABLE_STATUSES:
                    raise ValidationException(
                        f"Appointment in status '{row['status']}' cannot be rescheduled",
                        field="status",
                        details={"status": row["status"]},
                    )

                duration = duration_minutes or row["duration_minutes"]
                new_end = new_start + timedelta(minutes=duration)
                await checker.ensure_available(
                    provider_id, new_start, new_end, exclude_appointment_id=appointment_id
                )
                updated = await self._update_row(
                    appointment_id,
                    {
                        "scheduled_start": new_start,
                        "scheduled_end": new_end,
                        "duration_minutes": duration,
                        "updated_at": now,
                    },
                )
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                raise await conflict_from_integrity_error(
                    self.db, provider_id, new_start, new_end, appointment_id
                )
            except Exception:
                await self.db.rollback()
                raise

            await self._reschedule_notifications(tenant_id, updated, row["scheduled_start"], now)

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment_id),
            previous_start=row["scheduled_start"].isoformat(),
            scheduled_start=new_start.isoformat(),
        )
        invalidate_slot_cache(self.cache, tenant_id)
        await self.audit.record(
            tenant_id,
            "appointment",
            appointment_id,
            "reschedule",
            {
                "previous_start": row["scheduled_start"],
                "scheduled_start": new_start,
                "duration_minutes": duration,
            },
        )
        return AppointmentResponse.model_validate(updated)

    async def _reschedule_notifications(
        self,
        tenant_id: UUID,
        appointment: dict[str, Any],
        previous_start: datetime,
        now: datetime,
    ) -> None:
        try:
            await NotificationService.supersede_appointment_notifications(
                self.db,
                tenant_id,
                appointment["id"],
                [NotificationType.APPOINTMENT_REMINDER.value],
                now,
                reason="rescheduled",
            )
            await NotificationService.schedule_status_notification(
                self.db,
                appointment,
                NotificationType.APPOINTMENT_RESCHEDULED,
                now,
                {
                    "previous_start": previous_start.isoformat(),
                    "appointment_start": appointment["scheduled_start"].isoformat(),
                },
            )
            await NotificationService.schedule_appointment_notifications(
                self.db, appointment, now, include_confirmation=False
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "failed_to_schedule_reschedule_notifications",
                appointment_id=str(appointment["id"]),
                error=str(e),
            )

    async def change_status(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        target: AppointmentStatus,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """
        Apply a status transition from the allowed-transition table.

        Args:
            tenant_id: Tenant scope
            appointment_id: Appointment to update
            target: Requested status
            reason: Cancellation reason when cancelling

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found under the tenant
            InvalidStatusTransitionException: If the transition is not allowed
        """
        now = self.clock.now()
        try:
            row = await self._get_row(tenant_id, appointment_id, lock=True)
            ensure_transition(row["status"], target)

            updated = await self._update_row(
                appointment_id, {**self._status_values(target, reason, now), "updated_at": now}
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if target == AppointmentStatus.CANCELLED:
            await self._cancellation_notifications(tenant_id, updated, now)

        logger.info(
            "appointment_status_changed",
            appointment_id=str(appointment_id),
            previous_status=row["status"],
            status=target.value,
        )
        invalidate_slot_cache(self.cache, tenant_id)
        await self.audit.record(
            tenant_id,
            "appointment",
            appointment_id,
            "status_change",
            {"from": row["status"], "to": target.value, "reason": reason},
        )
        return AppointmentResponse.model_validate(updated)

    @staticmethod
    def _status_values(target: AppointmentStatus, reason: str | None, now: datetime) -> dict[str, Any]:
        values: dict[str, Any] = {"status": target.value}
        stamp = STATUS_TIMESTAMPS.get(target)
        if stamp:
            values[stamp] = now
        if target == AppointmentStatus.CANCELLED:
            values["cancellation_reason"] = reason
        return values

    async def _cancellation_notifications(
        self,
        tenant_id: UUID,
        appointment: dict[str, Any],
        now: datetime,
    ) -> None:
        try:
            await NotificationService.supersede_appointment_notifications(
                self.db, tenant_id, appointment["id"], TIME_BOUND_TYPES, now, reason="cancelled"
            )
            await NotificationService.schedule_status_notification(
                self.db,
                appointment,
                NotificationType.APPOINTMENT_CANCELLED,
                now,
                {"cancellation_reason": appointment.get("cancellation_reason") or ""},
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "failed_to_schedule_cancellation_notification",
                appointment_id=str(appointment["id"]),
                error=str(e),
            )

    async def cancel_appointment(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """Cancel an appointment; the row is kept with status ``cancelled``."""
        return await self.change_status(tenant_id, appointment_id, AppointmentStatus.CANCELLED, reason)

    async def checkin_appointment(self, tenant_id: UUID, appointment_id: UUID) -> AppointmentResponse:
        """Mark the patient as arrived."""
        return await self.change_status(tenant_id, appointment_id, AppointmentStatus.ARRIVED)

    async def update_appointment(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        data: AppointmentUpdate,
    ) -> AppointmentResponse:
        """
        Apply an explicit update.

        Time fields, plain fields and ``status`` are validated against the
        locked row and written in one transaction, so a failed check leaves the
        appointment untouched. Time changes follow the rules of
        :meth:`reschedule_appointment` and status changes those of
        :meth:`change_status`.

        Raises:
            NotFoundException: If appointment not found under the tenant
            ValidationException: If the combination of fields is invalid
            InvalidStatusTransitionException: If the status change is not allowed
            ConflictException: If the new time collides with another booking
        """
        now = self.clock.now()
        fields = data.model_dump(exclude_unset=True)
        current = await self._get_row(tenant_id, appointment_id)

        target = fields.pop("status", None)
        cancellation_reason = fields.pop("cancellation_reason", None)
        if cancellation_reason is not None and target != AppointmentStatus.CANCELLED:
            raise ValidationException(
                "cancellation_reason requires status 'cancelled'", field="cancellation_reason"
            )
        if target is not None:
            ensure_transition(current["status"], target)

        new_start = fields.pop("scheduled_start", None)
        new_duration = fields.pop("duration_minutes", None)
        moving = new_start is not None or new_duration is not None
        if moving:
            new_start = new_start or current["scheduled_start"]
            ensure_future_start(new_start, now)

        direct = {key: fields[key] for key in DIRECT_UPDATE_FIELDS if key in fields}
        if direct.get("priority") is not None:
            direct["priority"] = direct["priority"].value

        provider_id = current["provider_id"]
        new_end = None
        async with self.locks.hold(provider_id):
            try:
                checker = ConflictChecker(self.db)
                if moving:
                    await checker.lock_provider(tenant_id, provider_id)
                row = await self._get_row(tenant_id, appointment_id, lock=True)

                values: dict[str, Any] = {**direct, "updated_at": now}
                if moving:
                    if AppointmentStatus(row["status"]) not in RESCHEDULABLE_STATUSES:
                        raise ValidationException(
                            f"Appointment in status '{row['status']}' cannot be rescheduled",
                            field="status",
                            details={"status": row["status"]},
                        )
                    duration = new_duration or row["duration_minutes"]
                    new_end = new_start + timedelta(minutes=duration)
                    await checker.ensure_available(
                        provider_id, new_start, new_end, exclude_appointment_id=appointment_id
                    )
                    values.update(scheduled_start=new_start, scheduled_end=new_end, duration_minutes=duration)
                if target is not None:
                    ensure_transition(row["status"], target)
                    values.update(self._status_values(target, cancellation_reason, now))

                updated = await self._update_row(appointment_id, values)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                if not moving:
                    raise
                raise await conflict_from_integrity_error(
                    self.db, provider_id, new_start, new_end, appointment_id
                )
            except Exception:
                await self.db.rollback()
                raise

            if target == AppointmentStatus.CANCELLED:
                await self._cancellation_notifications(tenant_id, updated, now)
            elif moving:
                await self._reschedule_notifications(tenant_id, updated, row["scheduled_start"], now)

        logger.info(
            "appointment_updated",
            appointment_id=str(appointment_id),
            fields=sorted(direct),
            rescheduled=moving,
            status=updated["status"],
        )
        invalidate_slot_cache(self.cache, tenant_id)
        if moving:
            await self.audit.record(
                tenant_id,
                "appointment",
                appointment_id,
                "reschedule",
                {
                    "previous_start": row["scheduled_start"],
                    "scheduled_start": updated["scheduled_start"],
                    "duration_minutes": updated["duration_minutes"],
                },
            )
        if direct:
            await self.audit.record(tenant_id, "appointment", appointment_id, "update", direct)
        if target is not None:
            await self.audit.record(
                tenant_id,
                "appointment",
                appointment_id,
                "status_change",
                {"from": row["status"], "to": target.value, "reason": cancellation_reason},
            )
        return AppointmentResponse.model_validate(updated)
