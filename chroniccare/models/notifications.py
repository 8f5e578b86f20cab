"""Notification records driven by the scheduler and dispatcher."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Uuid,
    func,
    text,
)

from chroniccare.models.base import JSONType, UTCDateTime, metadata, utcnow

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=True),
    Column("provider_id", Uuid, ForeignKey("providers.id"), nullable=True),
    Column("appointment_id", Uuid, ForeignKey("appointments.id"), nullable=True),
    Column("medication_id", Uuid, ForeignKey("medications.id"), nullable=True),
    Column("notification_type", String(50), nullable=False),
    # Resolved by the dispatcher when left empty by the producer
    Column("channel", String(10), nullable=True),
    Column("priority", Integer, nullable=False, default=5, server_default="5"),
    Column("scheduled_send_time", UTCDateTime, nullable=False),
    Column("sent_at", UTCDateTime, nullable=True),
    Column("read_at", UTCDateTime, nullable=True),
    Column(
        "delivery_status", String(20), nullable=False, default="pending", server_default="pending"
    ),
    # "transient" or "permanent" once a record has failed
    Column("failure_class", String(10), nullable=True),
    Column("template_data", JSONType, nullable=False, default=dict),
    Column("retry_count", Integer, nullable=False, default=0, server_default="0"),
    Column("delivery_details", JSONType, nullable=True),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column("updated_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    CheckConstraint(
        "channel IS NULL OR channel IN ('sms', 'email', 'push')",
        name="notifications_channel_check",
    ),
    CheckConstraint(
        "delivery_status IN ('pending', 'queued', 'delivered', 'failed', 'superseded')",
        name="notifications_status_check",
    ),
    CheckConstraint("priority BETWEEN 1 AND 10", name="notifications_priority_check"),
    CheckConstraint("retry_count BETWEEN 0 AND 3", name="notifications_retry_check"),
    CheckConstraint(
        "patient_id IS NOT NULL OR provider_id IS NOT NULL",
        name="notifications_recipient_check",
    ),
    Index("idx_notifications_tenant", "tenant_id"),
    Index("idx_notifications_appointment", "appointment_id"),
    Index("idx_notifications_patient", "patient_id"),
    Index(
        "idx_notifications_due",
        "priority",
        "scheduled_send_time",
        postgresql_where=text("delivery_status = 'pending'"),
    ),
    Index(
        "idx_notifications_retry",
        "updated_at",
        postgresql_where=text("delivery_status = 'failed'"),
    ),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("tenant_id", Uuid, nullable=False),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", Uuid, nullable=False),
    Column("action", String(50), nullable=False),
    Column("changes", JSONType, nullable=True),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Index("idx_audit_logs_entity", "entity_type", "entity_id"),
)
