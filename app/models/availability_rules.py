"""Clinician availability rules using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Table,
    text,
)

from app.models.base import metadata

clinician_availability_rules = Table(
    "clinician_availability_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "clinician_id",
        Integer,
        ForeignKey("clinician_profiles.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "centre_id",
        Integer,
        ForeignKey("centres.id", ondelete="CASCADE"),
        nullable=False,
    ),
    # 0 = Sunday ... 6 = Saturday
    Column("day_of_week", SmallInteger, nullable=False),
    # Local wall-clock minutes since midnight in the centre's timezone
    Column("start_minute", Integer, nullable=False),
    Column("end_minute", Integer, nullable=False),
    Column("slot_duration_minutes", Integer, nullable=False),
    Column("consultation_mode", String(20), nullable=False, server_default=text("'BOTH'")),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    # Constraints
    CheckConstraint("day_of_week BETWEEN 0 AND 6", name="availability_rules_day_check"),
    CheckConstraint(
        "start_minute >= 0 AND end_minute <= 1440 AND start_minute < end_minute",
        name="availability_rules_window_check",
    ),
    CheckConstraint("slot_duration_minutes > 0", name="availability_rules_slot_check"),
    CheckConstraint(
        "consultation_mode IN ('IN_PERSON', 'ONLINE', 'BOTH')",
        name="availability_rules_mode_check",
    ),
)

Index(
    "idx_availability_rules_clinician_day",
    clinician_availability_rules.c.clinician_id,
    clinician_availability_rules.c.day_of_week,
)
