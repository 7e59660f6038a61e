"""Clinician profile model definition using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    text,
)

from app.models.base import metadata

clinician_profiles = Table(
    "clinician_profiles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "user_id",
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("primary_centre_id", Integer, ForeignKey("centres.id", ondelete="SET NULL")),
    Column("specialization", String(200)),
    # Practice settings
    Column(
        "default_consultation_duration_minutes",
        Integer,
        nullable=False,
        server_default=text("30"),
    ),
    Column("consultation_fee", Numeric(10, 2)),
    Column("is_active", Boolean, nullable=False, server_default=text("true"), index=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    CheckConstraint(
        "default_consultation_duration_minutes > 0",
        name="clinician_profiles_duration_check",
    ),
)
