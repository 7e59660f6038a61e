"""Appointments and status history tables using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    text,
)

from app.models.base import metadata

APPOINTMENT_STATUSES = ("BOOKED", "CONFIRMED", "RESCHEDULED", "COMPLETED", "CANCELLED", "NO_SHOW")
APPOINTMENT_TYPES = ("IN_PERSON", "ONLINE", "INPATIENT_ASSESSMENT", "FOLLOW_UP")
APPOINTMENT_SOURCES = (
    "WEB_PATIENT",
    "ADMIN_FRONT_DESK",
    "ADMIN_CARE_COORDINATOR",
    "ADMIN_MANAGER",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Ownership / references
    Column("patient_id", Integer, ForeignKey("patient_profiles.id"), nullable=False),
    Column("clinician_id", Integer, ForeignKey("clinician_profiles.id"), nullable=False),
    Column("centre_id", Integer, ForeignKey("centres.id"), nullable=False),
    # Appointment details
    Column("appointment_type", String(32), nullable=False),
    Column("scheduled_start_at", DateTime(timezone=True), nullable=False),
    Column("scheduled_end_at", DateTime(timezone=True), nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    # Status management
    Column("status", String(20), nullable=False, server_default=text("'BOOKED'")),
    Column("parent_appointment_id", Integer, ForeignKey("appointments.id"), nullable=True),
    # Metadata
    Column("booked_by_user_id", Integer, ForeignKey("users.id"), nullable=True),
    Column("source", String(32), nullable=False),
    Column("notes", Text, nullable=True),
    # Soft delete (healthcare compliance)
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    # Constraints
    CheckConstraint(_in_clause("status", APPOINTMENT_STATUSES), name="appointments_status_check"),
    CheckConstraint(
        _in_clause("appointment_type", APPOINTMENT_TYPES),
        name="appointments_type_check",
    ),
    CheckConstraint(_in_clause("source", APPOINTMENT_SOURCES), name="appointments_source_check"),
    CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
    CheckConstraint(
        "scheduled_end_at = scheduled_start_at + make_interval(mins => duration_minutes)",
        name="appointments_end_matches_duration_check",
    ),
)

Index(
    "idx_appointments_clinician_start",
    appointments.c.clinician_id,
    appointments.c.scheduled_start_at,
)
Index("idx_appointments_patient_id", appointments.c.patient_id)
Index("idx_appointments_centre_id", appointments.c.centre_id)

# Requires the btree_gist extension; created by migration 002 and scripts/init_db.py
APPOINTMENTS_NO_OVERLAP_DDL = """
ALTER TABLE appointments
ADD CONSTRAINT appointments_no_overlap
EXCLUDE USING gist (
    clinician_id WITH =,
    tstzrange(scheduled_start_at, scheduled_end_at, '[)') WITH &&
)
WHERE (is_active AND status NOT IN ('CANCELLED', 'NO_SHOW'))
"""

# Append-only audit log, one row per status transition
appointment_status_history = Table(
    "appointment_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "appointment_id",
        Integer,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("previous_status", String(20), nullable=True),
    Column("new_status", String(20), nullable=False),
    Column("changed_by_user_id", Integer, ForeignKey("users.id"), nullable=True),
    Column("changed_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("reason", Text, nullable=True),
)

Index(
    "idx_status_history_appointment",
    appointment_status_history.c.appointment_id,
    appointment_status_history.c.id,
)
