"""Outbox of post-booking side effects using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
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

appointment_side_effects = Table(
    "appointment_side_effects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "appointment_id",
        Integer,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("effect_type", String(40), nullable=False),
    Column("status", String(20), nullable=False, server_default=text("'PENDING'")),
    Column("attempts", Integer, nullable=False, server_default=text("0")),
    Column("last_error", Text),
    Column("result", JSON),
    Column(
        "next_attempt_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=text("NOW()"),
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    CheckConstraint(
        "status IN ('PENDING', 'SUCCEEDED', 'FAILED', 'DEAD_LETTER')",
        name="side_effects_status_check",
    ),
)

# Retry processor scans due rows
Index(
    "idx_side_effects_due",
    appointment_side_effects.c.status,
    appointment_side_effects.c.next_attempt_at,
)
