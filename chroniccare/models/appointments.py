"""Appointment and appointment series tables."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
    true,
)

from chroniccare.models.base import JSONType, UTCDateTime, metadata, utcnow

# Statuses that do not occupy the provider's calendar
RELEASED_STATUSES_SQL = "status NOT IN ('cancelled', 'no-show')"

appointment_series = Table(
    "appointment_series",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=False),
    Column("provider_id", Uuid, ForeignKey("providers.id"), nullable=False),
    Column("facility_id", Uuid, ForeignKey("facilities.id"), nullable=False),
    Column("series_name", String(200), nullable=False),
    Column("recurrence_pattern", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=True),
    Column("total_appointments", Integer, nullable=False, default=0, server_default="0"),
    Column("completed_appointments", Integer, nullable=False, default=0, server_default="0"),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    CheckConstraint(
        "recurrence_pattern IN ('daily', 'weekly', 'biweekly', 'monthly', 'custom')",
        name="appointment_series_pattern_check",
    ),
    Index("idx_appointment_series_tenant_patient", "tenant_id", "patient_id"),
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=False),
    Column("provider_id", Uuid, ForeignKey("providers.id"), nullable=False),
    Column("facility_id", Uuid, ForeignKey("facilities.id"), nullable=False),
    Column("series_id", Uuid, ForeignKey("appointment_series.id"), nullable=True),
    Column("appointment_type", String(30), nullable=False),
    Column("scheduled_start", UTCDateTime, nullable=False),
    Column("scheduled_end", UTCDateTime, nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("status", String(20), nullable=False, default="scheduled", server_default="scheduled"),
    Column("priority", String(10), nullable=False, default="normal", server_default="normal"),
    Column("reason", Text, nullable=True),
    Column("special_requirements", JSONType, nullable=True),
    Column("pre_appointment_instructions", Text, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("checked_in_at", UTCDateTime, nullable=True),
    Column("started_at", UTCDateTime, nullable=True),
    Column("completed_at", UTCDateTime, nullable=True),
    Column("cancelled_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    CheckConstraint(
        "status IN ('scheduled', 'confirmed', 'arrived', 'in-progress', 'completed', "
        "'cancelled', 'no-show')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "priority IN ('low', 'normal', 'high', 'urgent')",
        name="appointments_priority_check",
    ),
    CheckConstraint(
        "appointment_type IN ('consultation', 'follow-up', 'treatment', 'procedure', "
        "'imaging', 'lab', 'therapy', 'screening', 'vaccination', 'other')",
        name="appointments_type_check",
    ),
    CheckConstraint(
        "duration_minutes BETWEEN 15 AND 480",
        name="appointments_duration_check",
    ),
    CheckConstraint("scheduled_end > scheduled_start", name="appointments_interval_check"),
    Index("idx_appointments_tenant_patient", "tenant_id", "patient_id"),
    Index("idx_appointments_provider_window", "provider_id", "scheduled_start", "scheduled_end"),
    Index("idx_appointments_series", "series_id"),
    # Last line of defence against identical live bookings; overlap is guarded by
    # the conflict checker and, on PostgreSQL, by an exclusion constraint.
    Index(
        "uq_appointments_provider_start_live",
        "provider_id",
        "scheduled_start",
        unique=True,
        postgresql_where=text(RELEASED_STATUSES_SQL),
        sqlite_where=text(RELEASED_STATUSES_SQL),
    ),
)
