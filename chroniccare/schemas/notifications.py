"""Notification schemas for request/response validation."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chroniccare.core.clock import ensure_utc


class NotificationType(str, Enum):
    """Notification type enumeration."""

    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    MEDICATION_REMINDER = "medication_reminder"
    MEDICATION_REFILL_REMINDER = "medication_refill_reminder"
    MEDICATION_DISCONTINUED = "medication_discontinued"
    MEDICATION_ADHERENCE_LOW = "medication_adherence_low"


class NotificationChannel(str, Enum):
    """Delivery channels in fallback order."""

    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


class DeliveryStatus(str, Enum):
    """Notification delivery states."""

    PENDING = "pending"
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class FailureClass(str, Enum):
    """Whether a failed record may be retried."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class NotificationPriority(int, Enum):
    """Named priority levels; higher values are serviced first."""

    LOW = 3
    MEDIUM = 5
    HIGH = 7
    URGENT = 10


class NotificationCreate(BaseModel):
    """Schema for creating a notification from the API."""

    model_config = ConfigDict(extra="forbid")

    patient_id: UUID | None = None
    provider_id: UUID | None = None
    appointment_id: UUID | None = None
    medication_id: UUID | None = None
    notification_type: NotificationType
    channel: NotificationChannel | None = None
    priority: int = Field(NotificationPriority.MEDIUM.value, ge=1, le=10)
    scheduled_send_time: datetime | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_send_time")
    @classmethod
    def normalise_send_time(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v else v

    @model_validator(mode="after")
    def require_recipient(self) -> "NotificationCreate":
        if self.patient_id is None and self.provider_id is None:
            raise ValueError("Either patient_id or provider_id is required")
        return self


class NotificationResponse(BaseModel):
    """Schema for notification response."""

    id: UUID
    tenant_id: UUID
    patient_id: UUID | None = None
    provider_id: UUID | None = None
    appointment_id: UUID | None = None
    medication_id: UUID | None = None
    notification_type: str
    channel: NotificationChannel | None = None
    priority: int
    scheduled_send_time: datetime
    sent_at: datetime | None = None
    read_at: datetime | None = None
    delivery_status: DeliveryStatus
    failure_class: FailureClass | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)
    retry_count: int
    delivery_details: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    """Schema for paginated notification list response."""

    total: int
    page: int
    page_size: int
    items: list[NotificationResponse]


class DeliveryStatusItem(BaseModel):
    """Delivery state of one notification."""

    id: UUID
    delivery_status: DeliveryStatus
    channel: NotificationChannel | None = None
    retry_count: int
    sent_at: datetime | None = None
    read_at: datetime | None = None
    delivery_details: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class NotificationStats(BaseModel):
    """Pipeline counters for one tenant."""

    pending: int
    queued: int
    delivered_last_24h: int
    failed_last_24h: int
    overdue: int
    healthy: bool


class NotificationPreferences(BaseModel):
    """Recipient communication preferences."""

    model_config = ConfigDict(extra="forbid")

    preferred_channel: NotificationChannel = NotificationChannel.SMS
    quiet_hours_enabled: bool = False
    quiet_hours_start: int = Field(22, ge=0, le=23)
    quiet_hours_end: int = Field(8, ge=0, le=23)
    opted_out: bool = False


class MedicationReminderResult(BaseModel):
    """Outcome of scheduling reminders for one medication."""

    medication_id: UUID
    reminders_scheduled: int
    refill_reminder_scheduled: bool
