"""Patient directory model (read-only to the scheduling core)."""

from uuid import uuid4

from sqlalchemy import Boolean, Column, Index, String, Table, Uuid, func, true

from chroniccare.models.base import JSONType, UTCDateTime, metadata, utcnow

patients = Table(
    "patients",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("mrn", String(50), nullable=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    # {"phone": ..., "email": ..., "device_token": ...}
    Column("contact_info", JSONType, nullable=False, default=dict),
    # {"preferred_channel", "quiet_hours_enabled", "quiet_hours_start",
    #  "quiet_hours_end", "opted_out"}
    Column("communication_preferences", JSONType, nullable=False, default=dict),
    Column("timezone", String(64), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Index("idx_patients_tenant", "tenant_id"),
)
