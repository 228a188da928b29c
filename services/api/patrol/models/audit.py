from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from patrol.db.base import Base, UTCDateTime

EVENT_STARTED = "started"
EVENT_CHECKPOINT = "checkpoint"
EVENT_TRAJECTORY_POINT = "trajectory_point"
EVENT_FINALIZED = "finalized"
EVENT_CANCELLED = "cancelled"
AUDIT_EVENT_TYPES = (EVENT_STARTED, EVENT_CHECKPOINT, EVENT_TRAJECTORY_POINT, EVENT_FINALIZED, EVENT_CANCELLED)


class AuditEntry(Base):
    """Append-only record of a patrol domain event.

    No foreign key to patrol_sessions: the history outlives whatever happens to
    the mutable session row.
    """

    __tablename__ = "audit_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    guard_id: Mapped[str] = mapped_column(String(128), index=True)
    event_type: Mapped[str] = mapped_column(String(32), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=lambda: datetime.now(timezone.utc), index=True)
