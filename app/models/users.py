"""User model definition using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Table,
    Text,
    text,
)

from app.models.base import metadata

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Profile info (managed outside the scheduling core)
    Column("full_name", Text, nullable=False),
    Column("email", Text, index=True),
    Column("phone", String(20), index=True),
    # PATIENT or STAFF; staff carry one or more roles
    Column("user_type", String(20), nullable=False, server_default=text("'PATIENT'")),
    Column("roles", JSON, nullable=False, server_default=text("'[]'")),
    # Example: ["FRONT_DESK"], ["ADMIN", "MANAGER"]
    Column("push_token", Text),  # FCM registration token
    # Account state
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    # Audit
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    CheckConstraint("user_type IN ('PATIENT', 'STAFF')", name="users_user_type_check"),
)
