"""Delivery of a single queued notification."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chroniccare.config import Settings
from chroniccare.core.clock import Clock, ensure_utc, get_zone
from chroniccare.models.appointments import appointments
from chroniccare.models.medications import medications
from chroniccare.models.notifications import notifications
from chroniccare.models.patients import patients
from chroniccare.models.providers import facilities, providers
from chroniccare.schemas.appointments import AppointmentStatus
from chroniccare.schemas.notifications import (
    DeliveryStatus,
    FailureClass,
    NotificationChannel,
    NotificationPreferences,
)
from chroniccare.services.channels import ChannelError, ChannelTransport
from chroniccare.services.notification_service import TIME_BOUND_TYPES
from chroniccare.services.notification_templates import TemplateRenderer, UnknownTemplateError

logger = structlog.get_logger(__name__)

FALLBACK_ORDER = (NotificationChannel.SMS, NotificationChannel.EMAIL, NotificationChannel.PUSH)

# Appointments whose reminders and confirmation are still worth sending
REMINDABLE_STATUSES = frozenset({AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value})

DATE_FORMAT = "%B %d, %Y"
TIME_FORMAT = "%I:%M %p"


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    ALREADY_DELIVERED = "already_delivered"
    NOT_QUEUED = "not_queued"
    MISSING = "missing"
    SUPERSEDED = "superseded"
    DEFERRED = "deferred"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


def in_quiet_hours(hour: int, start: int, end: int) -> bool:
    """
    Whether ``hour`` falls in the quiet window ``[start, end)``.

    The window may wrap past midnight; ``start == end`` means no window.
    """
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def select_channel(
    explicit: str | None,
    preferences: NotificationPreferences,
    contact_info: dict[str, Any] | None,
    transports: dict[NotificationChannel, ChannelTransport],
) -> tuple[NotificationChannel, str] | None:
    """
    First reachable channel and its address.

    Candidates are the record's own channel, the recipient's preferred
    channel, then sms, email and push. A channel is reachable when it has a
    transport and the recipient has the matching contact field.
    """
    candidates: list[NotificationChannel] = []
    if explicit:
        candidates.append(NotificationChannel(explicit))
    candidates.append(preferences.preferred_channel)
    candidates.extend(FALLBACK_ORDER)

    for channel in dict.fromkeys(candidates):
        transport = transports.get(channel)
        if transport is None:
            continue
        address = transport.address(contact_info)
        if address:
            return channel, address
    return None


class NotificationDispatcher:
    """
    Delivers queued notifications.

    ``dispatch`` is idempotent: only records in ``queued`` are attempted, so a
    redelivered queue message for an already handled record is a no-op.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transports: dict[NotificationChannel, ChannelTransport],
        clock: Clock,
        renderer: TemplateRenderer,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.transports = transports
        self.clock = clock
        self.renderer = renderer
        self.settings = settings

    async def dispatch(self, notification_id: UUID) -> DispatchOutcome:
        """
        Attempt delivery of one notification and record the result.

        An unexpected error after the record was claimed counts as a
        transient failure, so the record never stays in ``queued``. If even
        that cannot be recorded the error propagates and the queue message is
        redelivered.

        Args:
            notification_id: Notification id from the queue message

        Returns:
            What happened to the record
        """
        async with self.session_factory() as db:
            try:
                return await self._dispatch(db, notification_id)
            except Exception as e:
                await db.rollback()
                logger.exception("notification_dispatch_error", notification_id=str(notification_id))
                return await self._recover(db, notification_id, e)

    async def _recover(self, db: AsyncSession, notification_id: UUID, error: Exception) -> DispatchOutcome:
        result = await db.execute(
            select(notifications).where(notifications.c.id == notification_id).with_for_update()
        )
        row = result.mappings().first()
        if row is None or row["delivery_status"] != DeliveryStatus.QUEUED.value:
            await db.rollback()
            raise error
        channel = NotificationChannel(row["channel"]) if row["channel"] else None
        return await self._record_transient_failure(
            db,
            dict(row),
            self.clock.now(),
            ChannelError("DISPATCH_ERROR", f"{type(error).__name__}: {error}", retryable=True),
            channel,
        )

    async def _dispatch(self, db: AsyncSession, notification_id: UUID) -> DispatchOutcome:
        now = self.clock.now()
        result = await db.execute(
            select(notifications).where(notifications.c.id == notification_id).with_for_update()
        )
        row = result.mappings().first()
        if row is None:
            await db.rollback()
            logger.warning("notification_missing", notification_id=str(notification_id))
            return DispatchOutcome.MISSING

        record = dict(row)
        log = logger.bind(
            notification_id=str(notification_id),
            notification_type=record["notification_type"],
        )
        status = record["delivery_status"]
        if status == DeliveryStatus.DELIVERED.value:
            await db.rollback()
            log.info("notification_already_delivered")
            return DispatchOutcome.ALREADY_DELIVERED
        if status != DeliveryStatus.QUEUED.value:
            await db.rollback()
            log.info("notification_not_queued", delivery_status=status)
            return DispatchOutcome.NOT_QUEUED

        appointment = await self._load_appointment(db, record)
        stale_reason = self._stale_reason(record, appointment)
        if stale_reason:
            await self._update(
                db,
                notification_id,
                delivery_status=DeliveryStatus.SUPERSEDED.value,
                delivery_details={"superseded_at": now.isoformat(), "reason": stale_reason},
                updated_at=now,
            )
            log.info("notification_superseded", reason=stale_reason)
            return DispatchOutcome.SUPERSEDED

        recipient = await self._load_recipient(db, record)
        if recipient is None:
            return await self._fail_permanently(
                db, record, now, ChannelError("RECIPIENT_NOT_FOUND", "Recipient no longer exists", False)
            )
        preferences = self._preferences(recipient)
        if preferences.opted_out:
            return await self._fail_permanently(
                db, record, now, ChannelError("PATIENT_OPTED_OUT", "Recipient opted out of notifications")
            )

        zone = get_zone(recipient.get("timezone"), self.settings.default_timezone)
        if (
            preferences.quiet_hours_enabled
            and record["priority"] < self.settings.urgent_priority_threshold
            and in_quiet_hours(
                now.astimezone(zone).hour,
                preferences.quiet_hours_start,
                preferences.quiet_hours_end,
            )
        ):
            deferred_to = now + timedelta(minutes=self.settings.quiet_hours_deferral_minutes)
            await self._update(
                db,
                notification_id,
                delivery_status=DeliveryStatus.PENDING.value,
                scheduled_send_time=deferred_to,
                updated_at=now,
            )
            log.info("notification_deferred_quiet_hours", deferred_to=deferred_to.isoformat())
            return DispatchOutcome.DEFERRED

        if not self.renderer.has_template(record["notification_type"]):
            return await self._fail_permanently(
                db,
                record,
                now,
                ChannelError("INVALID_NOTIFICATION_TYPE", str(UnknownTemplateError(record["notification_type"]))),
            )

        selected = select_channel(record["channel"], preferences, recipient.get("contact_info"), self.transports)
        if selected is None:
            return await self._fail_permanently(
                db, record, now, ChannelError("NO_DELIVERY_CHANNEL", "Recipient has no reachable channel")
            )
        channel, address = selected

        data = await self._build_template_data(db, record, recipient, appointment, zone)
        message = self.renderer.render(record["notification_type"], data)

        try:
            metadata = await self.transports[channel].deliver(address, message)
        except ChannelError as e:
            if not e.retryable:
                return await self._fail_permanently(db, record, now, e, channel)
            return await self._record_transient_failure(db, record, now, e, channel)

        await self._update(
            db,
            notification_id,
            delivery_status=DeliveryStatus.DELIVERED.value,
            channel=channel.value,
            sent_at=now,
            failure_class=None,
            delivery_details={**metadata, "channel": channel.value, "delivered_at": now.isoformat()},
            updated_at=now,
        )
        log.info("notification_delivered", channel=channel.value, retry_count=record["retry_count"])
        return DispatchOutcome.DELIVERED

    async def _update(self, db: AsyncSession, notification_id: UUID, **values: Any) -> None:
        await db.execute(update(notifications).where(notifications.c.id == notification_id).values(**values))
        await db.commit()

    async def _fail_permanently(
        self,
        db: AsyncSession,
        record: dict[str, Any],
        now: datetime,
        error: ChannelError,
        channel: NotificationChannel | None = None,
    ) -> DispatchOutcome:
        values: dict[str, Any] = {
            "delivery_status": DeliveryStatus.FAILED.value,
            "failure_class": FailureClass.PERMANENT.value,
            "delivery_details": {
                "error_code": error.code,
                "error": error.message,
                "failed_at": now.isoformat(),
                "retryable": False,
            },
            "updated_at": now,
        }
        if channel is not None:
            values["channel"] = channel.value
        await self._update(db, record["id"], **values)
        logger.warning(
            "notification_failed_permanently",
            notification_id=str(record["id"]),
            error_code=error.code,
            error=error.message,
        )
        return DispatchOutcome.FAILED

    async def _record_transient_failure(
        self,
        db: AsyncSession,
        record: dict[str, Any],
        now: datetime,
        error: ChannelError,
        channel: NotificationChannel | None,
    ) -> DispatchOutcome:
        attempts = record["retry_count"] + 1
        details: dict[str, Any] = {
            "error_code": error.code,
            "error": error.message,
            "failed_at": now.isoformat(),
            "retryable": True,
        }
        values: dict[str, Any] = {"updated_at": now}
        if channel is not None:
            details["channel"] = values["channel"] = channel.value
        if attempts >= self.settings.max_notification_attempts:
            await self._update(
                db,
                record["id"],
                delivery_status=DeliveryStatus.FAILED.value,
                failure_class=FailureClass.TRANSIENT.value,
                retry_count=self.settings.max_notification_attempts,
                delivery_details=details,
                **values,
            )
            logger.error(
                "notification_retries_exhausted",
                notification_id=str(record["id"]),
                error_code=error.code,
                attempts=attempts,
            )
            return DispatchOutcome.FAILED

        next_attempt = now + timedelta(minutes=self.settings.retry_backoff_minutes)
        await self._update(
            db,
            record["id"],
            delivery_status=DeliveryStatus.PENDING.value,
            retry_count=attempts,
            scheduled_send_time=next_attempt,
            delivery_details={**details, "next_attempt_at": next_attempt.isoformat()},
            **values,
        )
        logger.warning(
            "notification_retry_scheduled",
            notification_id=str(record["id"]),
            error_code=error.code,
            retry_count=attempts,
            next_attempt_at=next_attempt.isoformat(),
        )
        return DispatchOutcome.RETRY_SCHEDULED

    async def _load_appointment(self, db: AsyncSession, record: dict[str, Any]) -> dict[str, Any] | None:
        if record["appointment_id"] is None:
            return None
        result = await db.execute(
            select(appointments).where(
                and_(
                    appointments.c.id == record["appointment_id"],
                    appointments.c.tenant_id == record["tenant_id"],
                )
            )
        )
        row = result.mappings().first()
        return dict(row) if row else None

    def _stale_reason(self, record: dict[str, Any], appointment: dict[str, Any] | None) -> str | None:
        if record["appointment_id"] is None or record["notification_type"] not in TIME_BOUND_TYPES:
            return None
        if appointment is None:
            return "appointment_missing"
        if appointment["status"] not in REMINDABLE_STATUSES:
            return f"appointment_{appointment['status']}"

        snapshot = (record["template_data"] or {}).get("appointment_start")
        if snapshot:
            try:
                captured = ensure_utc(datetime.fromisoformat(snapshot))
            except ValueError:
                return None
            if captured != appointment["scheduled_start"]:
                return "appointment_rescheduled"
        return None

    async def _load_recipient(self, db: AsyncSession, record: dict[str, Any]) -> dict[str, Any] | None:
        if record["patient_id"] is not None:
            table, recipient_id = patients, record["patient_id"]
        else:
            table, recipient_id = providers, record["provider_id"]
        result = await db.execute(
            select(table).where(and_(table.c.id == recipient_id, table.c.tenant_id == record["tenant_id"]))
        )
        row = result.mappings().first()
        return dict(row) if row else None

    def _preferences(self, recipient: dict[str, Any]) -> NotificationPreferences:
        stored = recipient.get("communication_preferences") or {}
        defaults = {
            "quiet_hours_start": self.settings.quiet_hours_default_start,
            "quiet_hours_end": self.settings.quiet_hours_default_end,
        }
        known = {k: v for k, v in stored.items() if k in NotificationPreferences.model_fields}
        return NotificationPreferences(**{**defaults, **known})

    async def _build_template_data(
        self,
        db: AsyncSession,
        record: dict[str, Any],
        recipient: dict[str, Any],
        appointment: dict[str, Any] | None,
        zone: Any,
    ) -> dict[str, Any]:
        """Stored template data overlaid with current appointment or medication fields."""
        live: dict[str, Any] = {
            "patient_name": f"{recipient['first_name']} {recipient['last_name']}",
        }

        if appointment is not None:
            provider = (
                await db.execute(select(providers).where(providers.c.id == appointment["provider_id"]))
            ).mappings().first()
            facility = (
                await db.execute(select(facilities).where(facilities.c.id == appointment["facility_id"]))
            ).mappings().first()
            if recipient.get("timezone") is None and facility is not None:
                zone = get_zone(facility["timezone"], self.settings.default_timezone)
            local_start = appointment["scheduled_start"].astimezone(zone)
            live.update(
                appointment_date=local_start.strftime(DATE_FORMAT),
                appointment_time=local_start.strftime(TIME_FORMAT),
                appointment_type=appointment["appointment_type"].replace("_", " "),
            )
            if provider is not None:
                live["provider_name"] = f"Dr. {provider['first_name']} {provider['last_name']}"
            if facility is not None:
                live["facility_name"] = facility["name"]
            if appointment.get("cancellation_reason"):
                live["reason"] = appointment["cancellation_reason"]

        if record["medication_id"] is not None:
            medication = (
                await db.execute(select(medications).where(medications.c.id == record["medication_id"]))
            ).mappings().first()
            if medication is not None:
                live.update(
                    medication_name=medication["medication_name"],
                    dosage=medication["dosage"],
                    instructions=medication["instructions"],
                    refills_remaining=medication["refills_remaining"],
                )

        return {**(record["template_data"] or {}), **{k: v for k, v in live.items() if v is not None}}
