"""create appointment tables

Revision ID: 002
Revises: 001
Create Date: 2026-09-14 10:30:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUS_PREDICATE = "status NOT IN ('cancelled', 'no-show')"


def upgrade() -> None:
    """Create appointment_series and appointments with overlap protection."""
    op.create_table(
        "appointment_series",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("facility_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("series_name", sa.String(200), nullable=False),
        sa.Column("recurrence_pattern", sa.String(20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("total_appointments", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "completed_appointments", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
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
        sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"]),
        sa.CheckConstraint(
            "recurrence_pattern IN ('daily', 'weekly', 'biweekly', 'monthly', 'custom')",
            name="appointment_series_pattern_check",
        ),
    )
    op.create_index(
        "idx_appointment_series_tenant_patient",
        "appointment_series",
        ["tenant_id", "patient_id"],
    )

    op.create_table(
        "appointments",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("facility_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("series_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("appointment_type", sa.String(30), nullable=False),
        sa.Column("scheduled_start", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("scheduled_end", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'scheduled'"), nullable=False),
        sa.Column("priority", sa.String(10), server_default=sa.text("'normal'"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("special_requirements", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("pre_appointment_instructions", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("checked_in_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("started_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
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
        sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"]),
        sa.ForeignKeyConstraint(["series_id"], ["appointment_series.id"]),
        sa.CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'arrived', 'in-progress', 'completed', "
            "'cancelled', 'no-show')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'normal', 'high', 'urgent')",
            name="appointments_priority_check",
        ),
        sa.CheckConstraint(
            "appointment_type IN ('consultation', 'follow-up', 'treatment', 'procedure', "
            "'imaging', 'lab', 'therapy', 'screening', 'vaccination', 'other')",
            name="appointments_type_check",
        ),
        sa.CheckConstraint("duration_minutes BETWEEN 15 AND 480", name="appointments_duration_check"),
        sa.CheckConstraint("scheduled_end > scheduled_start", name="appointments_interval_check"),
    )

    op.create_index("idx_appointments_tenant_patient", "appointments", ["tenant_id", "patient_id"])
    op.create_index(
        "idx_appointments_provider_window",
        "appointments",
        ["provider_id", "scheduled_start", "scheduled_end"],
    )
    op.create_index("idx_appointments_series", "appointments", ["series_id"])
    op.create_index(
        "uq_appointments_provider_start_live",
        "appointments",
        ["provider_id", "scheduled_start"],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_PREDICATE),
    )

    # Half-open ranges: back-to-back bookings do not collide
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
    op.execute(
        f"""
        ALTER TABLE appointments
        ADD CONSTRAINT appointments_no_provider_overlap
        EXCLUDE USING gist (
            provider_id WITH =,
            tstzrange(scheduled_start, scheduled_end, '[)') WITH &&
        )
        WHERE ({LIVE_STATUS_PREDICATE});
        """
    )


def downgrade() -> None:
    """Drop appointment tables."""
    op.execute("ALTER TABLE appointments DROP CONSTRAINT IF EXISTS appointments_no_provider_overlap")
    op.drop_index("uq_appointments_provider_start_live", table_name="appointments")
    op.drop_index("idx_appointments_series", table_name="appointments")
    op.drop_index("idx_appointments_provider_window", table_name="appointments")
    op.drop_index("idx_appointments_tenant_patient", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("idx_appointment_series_tenant_patient", table_name="appointment_series")
    op.drop_table("appointment_series")
