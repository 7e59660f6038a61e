"""Centre model definition using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Table,
    Text,
    text,
)

from app.models.base import metadata

centres = Table(
    "centres",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("city", String(100)),
    Column("address", Text),
    Column("contact_phone", String(20)),
    # IANA identifier; availability rules are wall-clock times in this zone
    Column("timezone", String(64), nullable=False, server_default=text("'Asia/Kolkata'")),
    Column("is_active", Boolean, nullable=False, server_default=text("true"), index=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
)
