from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Float, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from patrol.db.base import Base, UTCDateTime

STATUS_IN_PROGRESS = "in_progress"
STATUS_FINALIZED = "finalized"
STATUS_CANCELLED = "cancelled"
SESSION_STATUSES = (STATUS_IN_PROGRESS, STATUS_FINALIZED, STATUS_CANCELLED)


class PatrolSession(Base):
    __tablename__ = "patrol_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    guard_id: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(32), default=STATUS_IN_PROGRESS, index=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=lambda: datetime.now(timezone.utc), index=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    start_latitude: Mapped[float] = mapped_column(Float)
    start_longitude: Mapped[float] = mapped_column(Float)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    checkpoint_count: Mapped[int] = mapped_column(Integer, default=0)
    total_distance: Mapped[float] = mapped_column(Float, default=0.0)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        # At most one in-progress session per guard, enforced by the database.
        Index(
            "uq_patrol_sessions_active_guard",
            "guard_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_IN_PROGRESS
