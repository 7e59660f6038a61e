"""Create availability rules, appointments and status history

Revision ID: 002
Revises: 001
Create Date: 2026-09-28

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

STATUSES = "'BOOKED', 'CONFIRMED', 'RESCHEDULED', 'COMPLETED', 'CANCELLED', 'NO_SHOW'"
TYPES = "'IN_PERSON', 'ONLINE', 'INPATIENT_ASSESSMENT', 'FOLLOW_UP'"
SOURCES = "'WEB_PATIENT', 'ADMIN_FRONT_DESK', 'ADMIN_CARE_COORDINATOR', 'ADMIN_MANAGER'"


def upgrade() -> None:
    """Create scheduling tables and the per-clinician no-overlap constraint."""
    # gist index over (integer =, tstzrange &&)
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    op.create_table(
        "clinician_availability_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinician_id", sa.Integer(), nullable=False),
        sa.Column("centre_id", sa.Integer(), nullable=False),
        sa.Column("day_of_week", sa.SmallInteger(), nullable=False),
        sa.Column("start_minute", sa.Integer(), nullable=False),
        sa.Column("end_minute", sa.Integer(), nullable=False),
        sa.Column("slot_duration_minutes", sa.Integer(), nullable=False),
        sa.Column(
            "consultation_mode",
            sa.String(length=20),
            server_default=sa.text("'BOTH'"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_clinician_availability_rules"),
        sa.ForeignKeyConstraint(
            ["clinician_id"],
            ["clinician_profiles.id"],
            name="fk_clinician_availability_rules_clinician_id_clinician_profiles",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["centre_id"],
            ["centres.id"],
            name="fk_clinician_availability_rules_centre_id_centres",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="availability_rules_day_check"),
        sa.CheckConstraint(
            "start_minute >= 0 AND end_minute <= 1440 AND start_minute < end_minute",
            name="availability_rules_window_check",
        ),
        sa.CheckConstraint("slot_duration_minutes > 0", name="availability_rules_slot_check"),
        sa.CheckConstraint(
            "consultation_mode IN ('IN_PERSON', 'ONLINE', 'BOTH')",
            name="availability_rules_mode_check",
        ),
    )
    op.create_index(
        "idx_availability_rules_clinician_day",
        "clinician_availability_rules",
        ["clinician_id", "day_of_week"],
    )

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("clinician_id", sa.Integer(), nullable=False),
        sa.Column("centre_id", sa.Integer(), nullable=False),
        sa.Column("appointment_type", sa.String(length=32), nullable=False),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            server_default=sa.text("'BOOKED'"),
            nullable=False,
        ),
        sa.Column("parent_appointment_id", sa.Integer(), nullable=True),
        sa.Column("booked_by_user_id", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_appointments"),
        sa.ForeignKeyConstraint(
            ["patient_id"],
            ["patient_profiles.id"],
            name="fk_appointments_patient_id_patient_profiles",
        ),
        sa.ForeignKeyConstraint(
            ["clinician_id"],
            ["clinician_profiles.id"],
            name="fk_appointments_clinician_id_clinician_profiles",
        ),
        sa.ForeignKeyConstraint(
            ["centre_id"],
            ["centres.id"],
            name="fk_appointments_centre_id_centres",
        ),
        sa.ForeignKeyConstraint(
            ["parent_appointment_id"],
            ["appointments.id"],
            name="fk_appointments_parent_appointment_id_appointments",
        ),
        sa.ForeignKeyConstraint(
            ["booked_by_user_id"],
            ["users.id"],
            name="fk_appointments_booked_by_user_id_users",
        ),
        sa.CheckConstraint(f"status IN ({STATUSES})", name="appointments_status_check"),
        sa.CheckConstraint(f"appointment_type IN ({TYPES})", name="appointments_type_check"),
        sa.CheckConstraint(f"source IN ({SOURCES})", name="appointments_source_check"),
        sa.CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
        sa.CheckConstraint(
            "scheduled_end_at = scheduled_start_at + make_interval(mins => duration_minutes)",
            name="appointments_end_matches_duration_check",
        ),
    )
    op.create_index(
        "idx_appointments_clinician_start",
        "appointments",
        ["clinician_id", "scheduled_start_at"],
    )
    op.create_index("idx_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("idx_appointments_centre_id", "appointments", ["centre_id"])

    # Last line of defence against double booking
    op.execute(
        """
        ALTER TABLE appointments
        ADD CONSTRAINT appointments_no_overlap
        EXCLUDE USING gist (
            clinician_id WITH =,
            tstzrange(scheduled_start_at, scheduled_end_at, '[)') WITH &&
        )
        WHERE (is_active AND status NOT IN ('CANCELLED', 'NO_SHOW'));
        """
    )

    op.create_table(
        "appointment_status_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("appointment_id", sa.Integer(), nullable=False),
        sa.Column("previous_status", sa.String(length=20), nullable=True),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.Column("changed_by_user_id", sa.Integer(), nullable=True),
        sa.Column(
            "changed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_appointment_status_history"),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_appointment_status_history_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["changed_by_user_id"],
            ["users.id"],
            name="fk_appointment_status_history_changed_by_user_id_users",
        ),
    )
    op.create_index(
        "idx_status_history_appointment",
        "appointment_status_history",
        ["appointment_id", "id"],
    )


def downgrade() -> None:
    """Drop scheduling tables."""
    op.drop_index("idx_status_history_appointment", table_name="appointment_status_history")
    op.drop_table("appointment_status_history")
    op.execute("ALTER TABLE appointments DROP CONSTRAINT IF EXISTS appointments_no_overlap")
    op.drop_index("idx_appointments_centre_id", table_name="appointments")
    op.drop_index("idx_appointments_patient_id", table_name="appointments")
    op.drop_index("idx_appointments_clinician_start", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index(
        "idx_availability_rules_clinician_day",
        table_name="clinician_availability_rules",
    )
    op.drop_table("clinician_availability_rules")
