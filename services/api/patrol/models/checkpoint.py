from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from patrol.db.base import Base, UTCDateTime


class CheckpointVisit(Base):
    __tablename__ = "checkpoint_visits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("patrol_sessions.id"), index=True)
    # Free-form checkpoints have no control point.
    control_point_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer)

    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    distance_to_point: Mapped[float | None] = mapped_column(Float, nullable=True)
    within_radius: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    distance_from_previous: Mapped[float] = mapped_column(Float, default=0.0)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    photo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=lambda: datetime.now(timezone.utc))
    elapsed_since_previous: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (UniqueConstraint("session_id", "sequence_number", name="uq_checkpoint_visits_session_sequence"),)
