"""patrol schema

Revision ID: 0001_patrol_schema
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_patrol_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "control_points",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("sector", sa.String(length=100), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_meters", sa.Float(), nullable=False, server_default="30"),
        sa.Column("mandatory", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("order_hint", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Index("ix_control_points_sector", "sector"),
    )

    op.create_table(
        "patrol_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("guard_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_latitude", sa.Float(), nullable=False),
        sa.Column("start_longitude", sa.Float(), nullable=False),
        sa.Column("end_latitude", sa.Float(), nullable=True),
        sa.Column("end_longitude", sa.Float(), nullable=True),
        sa.Column("checkpoint_count", sa.Integer(), nullable=False),
        sa.Column("total_distance", sa.Float(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Index("ix_patrol_sessions_guard_id", "guard_id"),
        sa.Index("ix_patrol_sessions_status", "status"),
        sa.Index("ix_patrol_sessions_started_at", "started_at"),
    )
    op.create_index(
        "uq_patrol_sessions_active_guard",
        "patrol_sessions",
        ["guard_id"],
        unique=True,
        sqlite_where=sa.text("status = 'in_progress'"),
        postgresql_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        "position_samples",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("altitude", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["patrol_sessions.id"], name="fk_position_samples_session"),
        sa.Index("ix_position_samples_session_recorded", "session_id", "recorded_at"),
    )

    op.create_table(
        "checkpoint_visits",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("control_point_id", sa.String(length=64), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("distance_to_point", sa.Float(), nullable=True),
        sa.Column("within_radius", sa.Boolean(), nullable=True),
        sa.Column("distance_from_previous", sa.Float(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("photo_url", sa.String(length=500), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("elapsed_since_previous", sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["patrol_sessions.id"], name="fk_checkpoint_visits_session"),
        sa.UniqueConstraint("session_id", "sequence_number", name="uq_checkpoint_visits_session_sequence"),
        sa.Index("ix_checkpoint_visits_session_id", "session_id"),
        sa.Index("ix_checkpoint_visits_control_point_id", "control_point_id"),
    )

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=True),
        sa.Column("guard_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Index("ix_audit_entries_session_id", "session_id"),
        sa.Index("ix_audit_entries_guard_id", "guard_id"),
        sa.Index("ix_audit_entries_event_type", "event_type"),
        sa.Index("ix_audit_entries_recorded_at", "recorded_at"),
    )


def downgrade() -> None:
    op.drop_table("audit_entries")
    op.drop_table("checkpoint_visits")
    op.drop_table("position_samples")
    op.drop_index("uq_patrol_sessions_active_guard", table_name="patrol_sessions")
    op.drop_table("patrol_sessions")
    op.drop_table("control_points")
