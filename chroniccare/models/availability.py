"""Provider weekly availability rules."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    Table,
    Time,
    Uuid,
    func,
    true,
)

from chroniccare.models.base import UTCDateTime, metadata, utcnow

provider_availability = Table(
    "provider_availability",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("provider_id", Uuid, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
    Column("facility_id", Uuid, ForeignKey("facilities.id", ondelete="CASCADE"), nullable=False),
    # 0 = Sunday ... 6 = Saturday
    Column("day_of_week", Integer, nullable=False),
    # Facility-local wall clock
    Column("start_time", Time, nullable=False),
    Column("end_time", Time, nullable=False),
    Column("slot_duration", Integer, nullable=False, default=30, server_default="30"),
    Column("is_available", Boolean, nullable=False, default=True, server_default=true()),
    Column("effective_from", Date, nullable=False),
    Column("effective_until", Date, nullable=True),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    CheckConstraint("day_of_week BETWEEN 0 AND 6", name="provider_availability_dow_check"),
    CheckConstraint("end_time > start_time", name="provider_availability_time_check"),
    CheckConstraint("slot_duration > 0", name="provider_availability_slot_check"),
    Index("idx_provider_availability_provider", "provider_id", "day_of_week"),
    Index("idx_provider_availability_facility", "facility_id"),
)
