"""Appointment series schemas."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chroniccare.core.clock import ensure_utc
from chroniccare.schemas.appointments import (
    AppointmentPriority,
    AppointmentResponse,
    AppointmentType,
)


class RecurrencePattern(str, Enum):
    """How series members repeat."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class SeriesMember(BaseModel):
    """One requested appointment inside a series."""

    model_config = ConfigDict(extra="forbid")

    appointment_type: AppointmentType
    scheduled_start: datetime
    duration_minutes: int = Field(..., ge=15, le=480)
    priority: AppointmentPriority = AppointmentPriority.NORMAL
    reason: str | None = Field(None, max_length=500)

    @field_validator("scheduled_start")
    @classmethod
    def normalise_start(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SeriesCreate(BaseModel):
    """
    Request to book a series atomically.

    Either ``appointments`` lists every member explicitly, or ``template`` plus
    ``occurrences`` is expanded by the recurrence pattern.
    """

    model_config = ConfigDict(extra="forbid")

    patient_id: UUID
    provider_id: UUID
    facility_id: UUID
    series_name: str = Field(..., min_length=1, max_length=200)
    recurrence_pattern: RecurrencePattern
    series_start_date: date
    series_end_date: date | None = None
    appointments: list[SeriesMember] | None = Field(None, min_length=1, max_length=104)
    template: SeriesMember | None = None
    occurrences: int | None = Field(None, ge=1, le=104)

    @model_validator(mode="after")
    def check_members(self) -> "SeriesCreate":
        if self.series_end_date and self.series_end_date < self.series_start_date:
            raise ValueError("series_end_date must not be before series_start_date")
        if self.appointments and self.template:
            raise ValueError("Provide either appointments or template, not both")
        if not self.appointments:
            if self.template is None:
                raise ValueError("Either appointments or template is required")
            if self.recurrence_pattern == RecurrencePattern.CUSTOM:
                raise ValueError("Custom recurrence requires an explicit appointments list")
            if self.occurrences is None and self.series_end_date is None:
                raise ValueError("Template expansion requires occurrences or series_end_date")
        return self


class SeriesResponse(BaseModel):
    """Created series with its members."""

    id: UUID
    tenant_id: UUID
    patient_id: UUID
    provider_id: UUID
    facility_id: UUID
    series_name: str
    recurrence_pattern: RecurrencePattern
    start_date: date
    end_date: date | None = None
    total_appointments: int
    completed_appointments: int
    is_active: bool
    appointments: list[AppointmentResponse]

    model_config = {"from_attributes": True}
