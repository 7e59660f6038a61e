"""Create video links and side-effect outbox

Revision ID: 003
Revises: 002
Create Date: 2026-10-05

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create appointment_video_links and appointment_side_effects."""
    op.create_table(
        "appointment_video_links",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("appointment_id", sa.Integer(), nullable=False),
        sa.Column("meet_link", sa.Text(), nullable=False),
        sa.Column(
            "provider",
            sa.String(length=32),
            server_default=sa.text("'GOOGLE_MEET'"),
            nullable=False,
        ),
        sa.Column("calendar_event_id", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_appointment_video_links"),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_appointment_video_links_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("appointment_id", name="uq_appointment_video_links_appointment_id"),
    )

    op.create_table(
        "appointment_side_effects",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("appointment_id", sa.Integer(), nullable=False),
        sa.Column("effect_type", sa.String(length=40), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            server_default=sa.text("'PENDING'"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
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
        sa.PrimaryKeyConstraint("id", name="pk_appointment_side_effects"),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_appointment_side_effects_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'SUCCEEDED', 'FAILED', 'DEAD_LETTER')",
            name="side_effects_status_check",
        ),
    )
    op.create_index(
        "idx_side_effects_due",
        "appointment_side_effects",
        ["status", "next_attempt_at"],
    )


def downgrade() -> None:
    """Drop the outbox and video links."""
    op.drop_index("idx_side_effects_due", table_name="appointment_side_effects")
    op.drop_table("appointment_side_effects")
    op.drop_table("appointment_video_links")
