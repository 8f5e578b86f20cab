"""Appointment schemas for request/response validation."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chroniccare.core.clock import ensure_utc


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    ARRIVED = "arrived"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class AppointmentType(str, Enum):
    """Kinds of visit offered by providers."""

    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    TREATMENT = "treatment"
    PROCEDURE = "procedure"
    IMAGING = "imaging"
    LAB = "lab"
    THERAPY = "therapy"
    SCREENING = "screening"
    VACCINATION = "vaccination"
    OTHER = "other"


class AppointmentPriority(str, Enum):
    """Clinical priority of an appointment."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    model_config = ConfigDict(extra="forbid")

    patient_id: UUID
    provider_id: UUID
    facility_id: UUID
    appointment_type: AppointmentType
    scheduled_start: datetime
    duration_minutes: int = Field(..., ge=15, le=480)
    priority: AppointmentPriority = AppointmentPriority.NORMAL
    reason: str | None = Field(None, max_length=500)
    special_requirements: dict[str, Any] | None = None
    pre_appointment_instructions: str | None = Field(None, max_length=2000)

    @field_validator("scheduled_start")
    @classmethod
    def normalise_start(cls, v: datetime) -> datetime:
        """Store start times in UTC; naive values are read as UTC."""
        return ensure_utc(v)


class AppointmentUpdate(BaseModel):
    """
    Explicit set of mutable appointment fields.

    Unknown keys are rejected. Time fields are applied through the reschedule
    path and ``status`` through the transition table.
    """

    model_config = ConfigDict(extra="forbid")

    scheduled_start: datetime | None = None
    duration_minutes: int | None = Field(None, ge=15, le=480)
    priority: AppointmentPriority | None = None
    reason: str | None = Field(None, max_length=500)
    special_requirements: dict[str, Any] | None = None
    pre_appointment_instructions: str | None = Field(None, max_length=2000)
    status: AppointmentStatus | None = None
    cancellation_reason: str | None = Field(None, max_length=500)

    @field_validator("scheduled_start")
    @classmethod
    def normalise_start(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v else v

    @model_validator(mode="after")
    def require_changes(self) -> "AppointmentUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class AppointmentStatusUpdate(BaseModel):
    """Schema for updating appointment status."""

    model_config = ConfigDict(extra="forbid")

    status: AppointmentStatus
    reason: str | None = Field(None, max_length=500)


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new time."""

    model_config = ConfigDict(extra="forbid")

    scheduled_start: datetime
    duration_minutes: int | None = Field(None, ge=15, le=480)

    @field_validator("scheduled_start")
    @classmethod
    def normalise_start(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AppointmentCancel(BaseModel):
    """Optional body of a cancellation."""

    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(None, max_length=500)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    tenant_id: UUID
    patient_id: UUID
    provider_id: UUID
    facility_id: UUID
    series_id: UUID | None = None
    appointment_type: AppointmentType
    scheduled_start: datetime
    scheduled_end: datetime
    duration_minutes: int
    status: AppointmentStatus
    priority: AppointmentPriority
    reason: str | None = None
    special_requirements: dict[str, Any] | None = None
    pre_appointment_instructions: str | None = None
    cancellation_reason: str | None = None
    checked_in_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering and pagination."""

    patient_id: UUID | None = None
    provider_id: UUID | None = None
    facility_id: UUID | None = None
    status: AppointmentStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]
