"""Availability rule and slot schemas."""

from dataclasses import dataclass
from datetime import date, datetime, time
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from chroniccare.schemas.appointments import AppointmentType


@dataclass(frozen=True)
class AvailabilityRule:
    """One weekly availability window of a provider at a facility."""

    id: UUID
    provider_id: UUID
    facility_id: UUID
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration: int
    effective_from: date
    effective_until: date | None
    timezone: str

    def applies_on(self, day: date) -> bool:
        """Whether the rule is effective on ``day`` and matches its weekday."""
        if sunday_based_weekday(day) != self.day_of_week:
            return False
        if day < self.effective_from:
            return False
        return self.effective_until is None or day <= self.effective_until


def sunday_based_weekday(day: date) -> int:
    """Weekday number with 0 = Sunday, as stored on availability rules."""
    return (day.weekday() + 1) % 7


class SlotQuery(BaseModel):
    """Filter for free slot search."""

    provider_id: UUID | None = None
    facility_id: UUID | None = None
    appointment_type: AppointmentType | None = None
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self) -> "SlotQuery":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SlotResponse(BaseModel):
    """A free bookable slot."""

    provider_id: UUID
    facility_id: UUID
    start: datetime
    end: datetime
    duration_minutes: int = Field(..., gt=0)
