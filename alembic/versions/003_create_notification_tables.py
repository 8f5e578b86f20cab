"""create notification tables

Revision ID: 003
Revises: 002
Create Date: 2026-09-14 11:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create notifications and audit_logs."""
    op.create_table(
        "notifications",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("medication_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(10), nullable=True),
        sa.Column("priority", sa.Integer(), server_default=sa.text("5"), nullable=False),
        sa.Column("scheduled_send_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("sent_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("read_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "delivery_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("failure_class", sa.String(10), nullable=True),
        sa.Column(
            "template_data",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("delivery_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"]),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"]),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"]),
        sa.CheckConstraint(
            "channel IS NULL OR channel IN ('sms', 'email', 'push')",
            name="notifications_channel_check",
        ),
        sa.CheckConstraint(
            "delivery_status IN ('pending', 'queued', 'delivered', 'failed', 'superseded')",
            name="notifications_status_check",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="notifications_priority_check"),
        sa.CheckConstraint("retry_count BETWEEN 0 AND 3", name="notifications_retry_check"),
        sa.CheckConstraint(
            "patient_id IS NOT NULL OR provider_id IS NOT NULL",
            name="notifications_recipient_check",
        ),
    )

    op.create_index("idx_notifications_tenant", "notifications", ["tenant_id"])
    op.create_index("idx_notifications_appointment", "notifications", ["appointment_id"])
    op.create_index("idx_notifications_patient", "notifications", ["patient_id"])
    op.create_index(
        "idx_notifications_due",
        "notifications",
        ["priority", "scheduled_send_time"],
        postgresql_where=sa.text("delivery_status = 'pending'"),
    )
    op.create_index(
        "idx_notifications_retry",
        "notifications",
        ["updated_at"],
        postgresql_where=sa.text("delivery_status = 'failed'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("changes", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    """Drop notifications and audit_logs."""
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_notifications_retry", table_name="notifications")
    op.drop_index("idx_notifications_due", table_name="notifications")
    op.drop_index("idx_notifications_patient", table_name="notifications")
    op.drop_index("idx_notifications_appointment", table_name="notifications")
    op.drop_index("idx_notifications_tenant", table_name="notifications")
    op.drop_table("notifications")
