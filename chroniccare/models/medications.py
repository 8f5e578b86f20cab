"""Medication records consulted for reminder scheduling and rendering."""

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
    false,
    func,
)

from chroniccare.models.base import JSONType, UTCDateTime, metadata, utcnow

medications = Table(
    "medications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=False),
    Column("prescribing_provider_id", Uuid, ForeignKey("providers.id"), nullable=True),
    Column("medication_name", String(200), nullable=False),
    Column("dosage", String(100), nullable=True),
    Column("frequency", String(100), nullable=True),
    Column("instructions", Text, nullable=True),
    # {"times": ["08:30", "20:30"]} overrides the frequency table
    Column("schedule_details", JSONType, nullable=True),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=True),
    Column("is_ongoing", Boolean, nullable=False, default=False, server_default=false()),
    Column("days_supply", Integer, nullable=True),
    Column("refills_remaining", Integer, nullable=False, default=0, server_default="0"),
    Column("status", String(20), nullable=False, default="active", server_default="active"),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    CheckConstraint("refills_remaining >= 0", name="medications_refills_check"),
    Index("idx_medications_tenant_patient", "tenant_id", "patient_id"),
)
