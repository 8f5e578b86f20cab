"""Notification record management: creation, scheduling, queuing and queries."""

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.config import settings
from chroniccare.core.exceptions import NotFoundException
from chroniccare.core.queue import NotificationQueue, QueuePublishError
from chroniccare.models.appointments import appointments
from chroniccare.models.medications import medications
from chroniccare.models.notifications import notifications
from chroniccare.schemas.notifications import (
    DeliveryStatus,
    DeliveryStatusItem,
    FailureClass,
    NotificationCreate,
    NotificationListResponse,
    NotificationResponse,
    NotificationStats,
    NotificationType,
)
from chroniccare.services.directory_service import DirectoryService

logger = structlog.get_logger(__name__)

CONFIRMATION_PRIORITY = 5
STATUS_CHANGE_PRIORITY = 8
# (lead time before the appointment, priority)
REMINDER_SCHEDULE: tuple[tuple[timedelta, int], ...] = (
    (timedelta(hours=72), 5),
    (timedelta(hours=24), 7),
    (timedelta(hours=2), 9),
)

# Reminder-like types that become stale when their appointment moves or ends
TIME_BOUND_TYPES = (
    NotificationType.APPOINTMENT_CONFIRMATION.value,
    NotificationType.APPOINTMENT_REMINDER.value,
)


class NotificationService:
    """Service for managing notification records."""

    @staticmethod
    async def _insert(db: AsyncSession, values: dict[str, Any]) -> dict[str, Any]:
        result = await db.execute(insert(notifications).values(**values).returning(notifications))
        return dict(result.mappings().one())

    @staticmethod
    def _appointment_values(
        appointment: Mapping[str, Any],
        notification_type: NotificationType,
        priority: int,
        send_at: datetime,
        now: datetime,
        template_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "tenant_id": appointment["tenant_id"],
            "patient_id": appointment["patient_id"],
            "appointment_id": appointment["id"],
            "notification_type": notification_type.value,
            "priority": priority,
            "scheduled_send_time": send_at,
            "delivery_status": DeliveryStatus.PENDING.value,
            "template_data": template_data or {},
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    async def schedule_appointment_notifications(
        db: AsyncSession,
        appointment: Mapping[str, Any],
        now: datetime,
        include_confirmation: bool = True,
    ) -> list[dict[str, Any]]:
        """
        Create the confirmation and reminder records of a booking.

        The confirmation is due immediately; reminders are due 72h, 24h and 2h
        before the start. Reminders already in the past are not created. The
        caller owns the transaction.

        Args:
            db: Database session
            appointment: Appointment row
            now: Current instant
            include_confirmation: False when only reminders are wanted (reschedule)

        Returns:
            Created notification rows
        """
        start: datetime = appointment["scheduled_start"]
        snapshot = {"appointment_start": start.isoformat()}

        created = []
        if include_confirmation:
            created.append(
                await NotificationService._insert(
                    db,
                    NotificationService._appointment_values(
                        appointment,
                        NotificationType.APPOINTMENT_CONFIRMATION,
                        CONFIRMATION_PRIORITY,
                        now,
                        now,
                        snapshot,
                    ),
                )
            )
        for lead_time, priority in REMINDER_SCHEDULE:
            send_at = start - lead_time
            if send_at <= now:
                continue
            created.append(
                await NotificationService._insert(
                    db,
                    NotificationService._appointment_values(
                        appointment,
                        NotificationType.APPOINTMENT_REMINDER,
                        priority,
                        send_at,
                        now,
                        {**snapshot, "hours_before": int(lead_time.total_seconds() // 3600)},
                    ),
                )
            )
        return created

    @staticmethod
    async def schedule_status_notification(
        db: AsyncSession,
        appointment: Mapping[str, Any],
        notification_type: NotificationType,
        now: datetime,
        template_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create an immediate cancelled/rescheduled notice. The caller commits."""
        return await NotificationService._insert(
            db,
            NotificationService._appointment_values(
                appointment,
                notification_type,
                STATUS_CHANGE_PRIORITY,
                now,
                now,
                template_data,
            ),
        )

    @staticmethod
    async def supersede_appointment_notifications(
        db: AsyncSession,
        tenant_id: UUID,
        appointment_id: UUID,
        notification_types: Sequence[str],
        now: datetime,
        reason: str,
    ) -> int:
        """
        Mark undelivered notifications of an appointment as superseded.

        Delivered records and terminally failed ones are left untouched. The
        caller owns the transaction.

        Returns:
            Number of records superseded
        """
        stmt = (
            update(notifications)
            .where(
                and_(
                    notifications.c.tenant_id == tenant_id,
                    notifications.c.appointment_id == appointment_id,
                    notifications.c.notification_type.in_(list(notification_types)),
                    or_(
                        notifications.c.delivery_status.in_(
                            [DeliveryStatus.PENDING.value, DeliveryStatus.QUEUED.value]
                        ),
                        and_(
                            notifications.c.delivery_status == DeliveryStatus.FAILED.value,
                            notifications.c.failure_class == FailureClass.TRANSIENT.value,
                            notifications.c.retry_count < settings.max_notification_attempts,
                        ),
                    ),
                )
            )
            .values(
                delivery_status=DeliveryStatus.SUPERSEDED.value,
                delivery_details={"superseded_at": now.isoformat(), "reason": reason},
                updated_at=now,
            )
        )
        result = await db.execute(stmt)
        if result.rowcount:
            logger.info(
                "notifications_superseded",
                appointment_id=str(appointment_id),
                count=result.rowcount,
                reason=reason,
            )
        return result.rowcount or 0

    @staticmethod
    async def enqueue(
        db: AsyncSession,
        queue: NotificationQueue,
        notification: Mapping[str, Any],
        now: datetime,
        queue_name: str = settings.notification_queue,
    ) -> bool:
        """
        Move a pending record to ``queued`` and publish its dispatch message.

        The status change is committed only once the message is published. If
        publishing fails the record becomes ``failed`` (transient) with the
        error attached, so the retry sweep can pick it up later.

        Args:
            db: Database session with no open work of the caller
            queue: Queue client
            notification: Notification row (id, tenant_id, priority)
            now: Current instant
            queue_name: Target queue

        Returns:
            True if queued, False if another worker claimed it or publishing failed
        """
        notification_id = notification["id"]
        claim = (
            update(notifications)
            .where(
                and_(
                    notifications.c.id == notification_id,
                    notifications.c.delivery_status == DeliveryStatus.PENDING.value,
                )
            )
            .values(delivery_status=DeliveryStatus.QUEUED.value, updated_at=now)
        )
        result = await db.execute(claim)
        if result.rowcount == 0:
            await db.rollback()
            return False

        try:
            await queue.publish(
                queue_name,
                {
                    "notification_id": str(notification_id),
                    "tenant_id": str(notification["tenant_id"]),
                },
                priority=notification["priority"],
            )
        except QueuePublishError as e:
            await db.rollback()
            await db.execute(
                update(notifications)
                .where(notifications.c.id == notification_id)
                .values(
                    delivery_status=DeliveryStatus.FAILED.value,
                    failure_class=FailureClass.TRANSIENT.value,
                    delivery_details={
                        "error": str(e),
                        "failed_at": now.isoformat(),
                        "stage": "publish",
                    },
                    updated_at=now,
                )
            )
            await db.commit()
            logger.error(
                "notification_publish_failed",
                notification_id=str(notification_id),
                error=str(e),
            )
            return False

        await db.commit()
        logger.info(
            "notification_queued",
            notification_id=str(notification_id),
            priority=notification["priority"],
        )
        return True

    @staticmethod
    async def _ensure_references(
        db: AsyncSession,
        tenant_id: UUID,
        data: NotificationCreate,
    ) -> None:
        directory = DirectoryService(db)
        if data.patient_id:
            await directory.get_patient(tenant_id, data.patient_id)
        if data.provider_id:
            await directory.get_provider(tenant_id, data.provider_id)
        for table, entity_id, resource in (
            (appointments, data.appointment_id, "appointment"),
            (medications, data.medication_id, "medication"),
        ):
            if entity_id is None:
                continue
            found = await db.execute(
                select(table.c.id).where(
                    and_(table.c.id == entity_id, table.c.tenant_id == tenant_id)
                )
            )
            if found.scalar_one_or_none() is None:
                raise NotFoundException(f"{resource.capitalize()} not found", resource, entity_id)

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        tenant_id: UUID,
        data: NotificationCreate,
        now: datetime,
        queue: NotificationQueue | None = None,
    ) -> NotificationResponse:
        """
        Create a notification and queue it right away when it is already due.

        Args:
            db: Database session
            tenant_id: Tenant scope
            data: Notification payload
            now: Current instant
            queue: Queue client; without one the scheduler picks the record up

        Returns:
            The stored notification

        Raises:
            NotFoundException: If a referenced entity is not under the tenant
        """
        await NotificationService._ensure_references(db, tenant_id, data)

        row = await NotificationService._insert(
            db,
            {
                "tenant_id": tenant_id,
                "patient_id": data.patient_id,
                "provider_id": data.provider_id,
                "appointment_id": data.appointment_id,
                "medication_id": data.medication_id,
                "notification_type": data.notification_type.value,
                "channel": data.channel.value if data.channel else None,
                "priority": data.priority,
                "scheduled_send_time": data.scheduled_send_time or now,
                "delivery_status": DeliveryStatus.PENDING.value,
                "template_data": data.template_data,
                "created_at": now,
                "updated_at": now,
            },
        )
        await db.commit()

        logger.info(
            "notification_created",
            notification_id=str(row["id"]),
            notification_type=row["notification_type"],
        )

        if queue is not None and row["scheduled_send_time"] <= now:
            await NotificationService.enqueue(db, queue, row, now)

        return await NotificationService.get_notification(db, tenant_id, row["id"])

    @staticmethod
    async def get_notification(
        db: AsyncSession,
        tenant_id: UUID,
        notification_id: UUID,
    ) -> NotificationResponse:
        """
        Get a notification by id.

        Raises:
            NotFoundException: If not found under the tenant
        """
        stmt = select(notifications).where(
            and_(notifications.c.id == notification_id, notifications.c.tenant_id == tenant_id)
        )
        result = await db.execute(stmt)
        row = result.mappings().first()
        if row is None:
            raise NotFoundException("Notification not found", "notification", notification_id)
        return NotificationResponse.model_validate(dict(row))

    @staticmethod
    async def list_notifications(
        db: AsyncSession,
        tenant_id: UUID,
        patient_id: UUID | None = None,
        appointment_id: UUID | None = None,
        delivery_status: DeliveryStatus | None = None,
        notification_type: NotificationType | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> NotificationListResponse:
        """List notifications of a tenant, newest scheduled first."""
        conditions = [notifications.c.tenant_id == tenant_id]
        if patient_id:
            conditions.append(notifications.c.patient_id == patient_id)
        if appointment_id:
            conditions.append(notifications.c.appointment_id == appointment_id)
        if delivery_status:
            conditions.append(notifications.c.delivery_status == delivery_status.value)
        if notification_type:
            conditions.append(notifications.c.notification_type == notification_type.value)

        count_stmt = select(func.count()).select_from(notifications).where(and_(*conditions))
        total = (await db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(notifications)
            .where(and_(*conditions))
            .order_by(notifications.c.scheduled_send_time.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        result = await db.execute(stmt)

        return NotificationListResponse(
            total=total,
            page=page,
            page_size=page_size,
            items=[NotificationResponse.model_validate(dict(r)) for r in result.mappings().all()],
        )

    @staticmethod
    async def get_delivery_status(
        db: AsyncSession,
        tenant_id: UUID,
        notification_ids: Sequence[UUID],
    ) -> list[DeliveryStatusItem]:
        """Delivery state of the given ids; ids outside the tenant are omitted."""
        if not notification_ids:
            return []
        stmt = (
            select(
                notifications.c.id,
                notifications.c.delivery_status,
                notifications.c.channel,
                notifications.c.retry_count,
                notifications.c.sent_at,
                notifications.c.read_at,
                notifications.c.delivery_details,
            )
            .where(
                and_(
                    notifications.c.tenant_id == tenant_id,
                    notifications.c.id.in_(list(notification_ids)),
                )
            )
            .order_by(notifications.c.created_at)
        )
        result = await db.execute(stmt)
        return [DeliveryStatusItem.model_validate(dict(r)) for r in result.mappings().all()]

    @staticmethod
    async def mark_as_read(
        db: AsyncSession,
        tenant_id: UUID,
        notification_id: UUID,
        now: datetime,
    ) -> NotificationResponse:
        """Stamp ``read_at`` once; later calls keep the first timestamp."""
        stmt = (
            update(notifications)
            .where(
                and_(
                    notifications.c.id == notification_id,
                    notifications.c.tenant_id == tenant_id,
                    notifications.c.read_at.is_(None),
                )
            )
            .values(read_at=now, updated_at=now)
        )
        await db.execute(stmt)
        await db.commit()
        return await NotificationService.get_notification(db, tenant_id, notification_id)

    @staticmethod
    async def get_stats(
        db: AsyncSession,
        tenant_id: UUID | None,
        now: datetime,
        overdue_threshold: int = settings.overdue_alert_threshold,
    ) -> NotificationStats:
        """
        Pipeline counters, optionally scoped to one tenant.

        Overdue means still pending more than one hour after its send time.
        """
        status = notifications.c.delivery_status
        day_ago = now - timedelta(hours=24)
        stmt = select(
            func.count().filter(status == DeliveryStatus.PENDING.value).label("pending"),
            func.count().filter(status == DeliveryStatus.QUEUED.value).label("queued"),
            func.count()
            .filter(and_(status == DeliveryStatus.DELIVERED.value, notifications.c.sent_at >= day_ago))
            .label("delivered_last_24h"),
            func.count()
            .filter(and_(status == DeliveryStatus.FAILED.value, notifications.c.updated_at >= day_ago))
            .label("failed_last_24h"),
            func.count()
            .filter(
                and_(
                    status == DeliveryStatus.PENDING.value,
                    notifications.c.scheduled_send_time < now - timedelta(hours=1),
                )
            )
            .label("overdue"),
        )
        if tenant_id is not None:
            stmt = stmt.where(notifications.c.tenant_id == tenant_id)

        row = (await db.execute(stmt)).mappings().one()
        counts = {key: int(value or 0) for key, value in row.items()}
        return NotificationStats(**counts, healthy=counts["overdue"] <= overdue_threshold)
