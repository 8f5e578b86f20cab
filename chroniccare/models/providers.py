"""Provider and facility directory models."""

from uuid import uuid4

from sqlalchemy import Boolean, Column, Index, String, Table, Uuid, func, true

from chroniccare.models.base import JSONType, UTCDateTime, metadata, utcnow

facilities = Table(
    "facilities",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("name", String(200), nullable=False),
    Column("facility_type", String(50), nullable=True),
    Column("timezone", String(64), nullable=False, default="UTC", server_default="UTC"),
    Column("contact_info", JSONType, nullable=False, default=dict),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Index("idx_facilities_tenant", "tenant_id"),
)

providers = Table(
    "providers",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("specialty", String(100), nullable=True),
    Column("contact_info", JSONType, nullable=False, default=dict),
    Column("communication_preferences", JSONType, nullable=False, default=dict),
    # appointment type -> minutes; a non-empty map also lists the offered types
    Column("default_appointment_durations", JSONType, nullable=False, default=dict),
    Column("timezone", String(64), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Index("idx_providers_tenant", "tenant_id"),
)
