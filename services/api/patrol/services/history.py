"""Read side of the patrol subsystem: history, detail, admin listing and statistics.

None of these reads take a guard lock.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import case, desc, func, select

from patrol.core.errors import NotFoundError, ValidationError
from patrol.models.checkpoint import CheckpointVisit
from patrol.models.patrol_session import (
    SESSION_STATUSES,
    STATUS_CANCELLED,
    STATUS_FINALIZED,
    STATUS_IN_PROGRESS,
    PatrolSession,
)
from patrol.models.position import PositionSample
from patrol.services.pagination import Page, day_bounds, paginate
from patrol.services.session_state import SessionFactory, db_scope, parse_session_id, utc_now
from patrol.services.trajectory import ordered_samples

TOP_GUARDS_LIMIT = 10
DAILY_WINDOW_DAYS = 7


def format_duration(seconds: float | None) -> str:
    """Render seconds as e.g. ``"1h 30min 45s"``."""

    if not seconds or seconds < 0:
        return "0s"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}min")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_km(meters: float | None) -> str:
    return f"{(meters or 0.0) / 1000:.2f} km"


@dataclass(frozen=True)
class SessionFilters:
    guard_id: str | None = None
    status: str | None = None
    date_from: date | None = None
    date_to: date | None = None


@dataclass
class SessionDetail:
    session: PatrolSession
    checkpoints: list[CheckpointVisit] = field(default_factory=list)
    trajectory: list[PositionSample] = field(default_factory=list)


class PatrolHistory:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def list_guard_history(
        self,
        guard_id: str,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[PatrolSession]:
        """Closed patrols of one guard, newest first."""

        start, end = day_bounds(date_from, date_to)
        stmt = select(PatrolSession).where(
            PatrolSession.guard_id == guard_id,
            PatrolSession.status.in_((STATUS_FINALIZED, STATUS_CANCELLED)),
        )
        if start is not None:
            stmt = stmt.where(PatrolSession.started_at >= start)
        if end is not None:
            stmt = stmt.where(PatrolSession.started_at < end)
        stmt = stmt.order_by(desc(PatrolSession.started_at))
        with db_scope(self._session_factory, "list_guard_history", guard_id=guard_id) as db:
            return paginate(db, stmt, page=page, limit=limit)

    def list_sessions(self, filters: SessionFilters | None = None, *, page: int = 1, limit: int = 20) -> Page[PatrolSession]:
        filters = filters or SessionFilters()
        if filters.status and filters.status not in SESSION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(SESSION_STATUSES)}")
        start, end = day_bounds(filters.date_from, filters.date_to)

        stmt = select(PatrolSession)
        if filters.guard_id:
            stmt = stmt.where(PatrolSession.guard_id == filters.guard_id)
        if filters.status:
            stmt = stmt.where(PatrolSession.status == filters.status)
        if start is not None:
            stmt = stmt.where(PatrolSession.started_at >= start)
        if end is not None:
            stmt = stmt.where(PatrolSession.started_at < end)
        stmt = stmt.order_by(desc(PatrolSession.started_at))
        with db_scope(self._session_factory, "list_sessions", filters=filters) as db:
            return paginate(db, stmt, page=page, limit=limit)

    def get_session_detail(self, session_id: uuid.UUID | str, *, guard_id: str | None = None) -> SessionDetail:
        """Session with its checkpoints and ordered trajectory.

        When ``guard_id`` is given the session must belong to that guard.
        """

        sid = parse_session_id(session_id)
        with db_scope(self._session_factory, "get_session_detail", session_id=sid) as db:
            session = db.get(PatrolSession, sid)
            if session is None or (guard_id is not None and session.guard_id != guard_id):
                raise NotFoundError("Patrol session not found", code="SESSION_NOT_FOUND")
            checkpoints = list(
                db.scalars(
                    select(CheckpointVisit).where(CheckpointVisit.session_id == sid).order_by(CheckpointVisit.sequence_number)
                ).all()
            )
            trajectory = ordered_samples(db, sid)
        return SessionDetail(session=session, checkpoints=checkpoints, trajectory=trajectory)

    def statistics(
        self,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = day_bounds(date_from, date_to)
        conditions = []
        if start is not None:
            conditions.append(PatrolSession.started_at >= start)
        if end is not None:
            conditions.append(PatrolSession.started_at < end)

        closed = PatrolSession.status.in_((STATUS_FINALIZED, STATUS_CANCELLED))
        totals_stmt = select(
            func.count(PatrolSession.id),
            func.count(case((PatrolSession.status == STATUS_FINALIZED, 1))),
            func.count(case((PatrolSession.status == STATUS_IN_PROGRESS, 1))),
            func.count(case((PatrolSession.status == STATUS_CANCELLED, 1))),
            func.coalesce(func.sum(PatrolSession.duration_seconds), 0.0),
            func.coalesce(func.sum(PatrolSession.total_distance), 0.0),
            func.coalesce(func.sum(PatrolSession.checkpoint_count), 0),
            func.coalesce(func.avg(case((closed, PatrolSession.duration_seconds))), 0.0),
            func.count(func.distinct(PatrolSession.guard_id)),
        ).where(*conditions)

        top_stmt = (
            select(
                PatrolSession.guard_id,
                func.count(PatrolSession.id).label("sessions"),
                func.coalesce(func.sum(PatrolSession.duration_seconds), 0.0),
                func.coalesce(func.sum(PatrolSession.total_distance), 0.0),
            )
            .where(PatrolSession.status == STATUS_FINALIZED, *conditions)
            .group_by(PatrolSession.guard_id)
            .order_by(desc("sessions"), PatrolSession.guard_id)
            .limit(TOP_GUARDS_LIMIT)
        )

        now = now or utc_now()
        window_start = now - timedelta(days=DAILY_WINDOW_DAYS)
        day = func.date(PatrolSession.started_at)
        daily_stmt = (
            select(day.label("day"), func.count(PatrolSession.id))
            .where(PatrolSession.started_at >= window_start)
            .group_by(day)
            .order_by(day)
        )

        with db_scope(self._session_factory, "statistics") as db:
            totals = db.execute(totals_stmt).one()
            top = db.execute(top_stmt).all()
            daily = db.execute(daily_stmt).all()

        (total, finalized, in_progress, cancelled, duration, distance, checkpoints, avg_duration, guards) = totals
        return {
            "totals": {
                "sessions": int(total),
                "finalized": int(finalized),
                "in_progress": int(in_progress),
                "cancelled": int(cancelled),
                "duration_seconds": float(duration),
                "duration": format_duration(float(duration)),
                "average_duration_seconds": float(avg_duration),
                "average_duration": format_duration(float(avg_duration)),
                "total_distance": float(distance),
                "total_distance_km": format_km(float(distance)),
                "checkpoints": int(checkpoints),
                "guards": int(guards),
            },
            "top_guards": [
                {
                    "guard_id": guard_id,
                    "sessions": int(count),
                    "duration_seconds": float(dur),
                    "duration": format_duration(float(dur)),
                    "total_distance": float(dist),
                    "total_distance_km": format_km(float(dist)),
                }
                for guard_id, count, dur, dist in top
            ],
            "sessions_per_day": [{"date": str(d), "total": int(n)} for d, n in daily],
        }
