"""Video consultation links using SQLAlchemy Core."""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    text,
)

from app.models.base import metadata

appointment_video_links = Table(
    "appointment_video_links",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "appointment_id",
        Integer,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("meet_link", Text, nullable=False),
    Column("provider", String(32), nullable=False, server_default=text("'GOOGLE_MEET'")),
    Column("calendar_event_id", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text("NOW()")),
)
