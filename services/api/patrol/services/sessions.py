"""Patrol session lifecycle.

State machine::

    in_progress --finalize--> finalized   (terminal)
    in_progress --cancel----> cancelled   (terminal)

Only this module moves a session between states. Trajectory samples and
checkpoint visits are child rows; distance is aggregated from them at
finalize time.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from patrol.core.errors import ConflictError, ValidationError
from patrol.models.audit import EVENT_CANCELLED, EVENT_FINALIZED, EVENT_STARTED
from patrol.models.checkpoint import CheckpointVisit
from patrol.models.patrol_session import STATUS_CANCELLED, STATUS_FINALIZED, STATUS_IN_PROGRESS, PatrolSession
from patrol.models.position import PositionSample
from patrol.services.audit import AuditTrail, ClientInfo, record_safely
from patrol.services.events import (
    SESSION_CANCELLED,
    SESSION_FINALIZED,
    SESSION_STARTED,
    EventPublisher,
    publish_safely,
    session_topic,
)
from patrol.services.geo import Coordinate, validate_coordinate
from patrol.services.locks import GuardLocks
from patrol.services.session_state import (
    SessionFactory,
    db_scope,
    elapsed_seconds,
    load_session,
    parse_session_id,
    require_in_progress,
    session_owner,
    utc_now,
)
from patrol.services.trajectory import ordered_samples, trajectory_distance

logger = logging.getLogger(__name__)

MAX_GUARD_ID_LEN = 128
MAX_NOTES_LEN = 1000
MAX_REASON_LEN = 500


@dataclass
class SessionRecord:
    session: PatrolSession
    checkpoints: list[CheckpointVisit] = field(default_factory=list)
    trajectory_points: int = 0


def _check_guard_id(guard_id: str) -> str:
    guard_id = (guard_id or "").strip()
    if not guard_id:
        raise ValidationError("guard_id is required")
    if len(guard_id) > MAX_GUARD_ID_LEN:
        raise ValidationError(f"guard_id must be at most {MAX_GUARD_ID_LEN} characters")
    return guard_id


def _check_text(name: str, value: str | None, max_len: int) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters")
    return value or None


def _append_note(existing: str | None, label: str, extra: str | None, *, bare_if_first: bool = False) -> str | None:
    if not extra:
        return existing
    if not existing:
        return extra if bare_if_first else f"{label}: {extra}"
    return f"{existing}\n\n{label}: {extra}"


def _session_event(event_type: str, session: PatrolSession, **extra: Any) -> dict[str, Any]:
    return {
        "type": event_type,
        "data": {
            "session_id": str(session.id),
            "guard_id": session.guard_id,
            "status": session.status,
            "started_at": session.started_at.isoformat(),
            "ended_at": session.ended_at.isoformat() if session.ended_at else None,
            **extra,
        },
    }


class SessionManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        locks: GuardLocks,
        audit: AuditTrail,
        publisher: EventPublisher,
        *,
        broadcast_topic: str,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._audit = audit
        self._publisher = publisher
        self._broadcast_topic = broadcast_topic

    def _publish(self, session: PatrolSession, event: dict[str, Any]) -> None:
        publish_safely(self._publisher, self._broadcast_topic, event)
        publish_safely(self._publisher, session_topic(session.id), event)

    def start_session(
        self,
        guard_id: str,
        position: Coordinate,
        notes: str | None = None,
        *,
        client: ClientInfo | None = None,
    ) -> SessionRecord:
        """Open a patrol for ``guard_id``.

        Raises:
            ValidationError: bad guard id, coordinates or notes.
            ConflictError: the guard already has a session in progress; its id is in ``details``.
        """

        guard_id = _check_guard_id(guard_id)
        coord = validate_coordinate(position.latitude, position.longitude)
        notes = _check_text("notes", notes, MAX_NOTES_LEN)

        with self._locks.hold(guard_id):
            with db_scope(self._session_factory, "start_session", guard_id=guard_id) as db:
                existing = self._active_for(db, guard_id)
                if existing is not None:
                    raise self._conflict(guard_id, existing.id)

                session = PatrolSession(
                    id=uuid.uuid4(),
                    guard_id=guard_id,
                    status=STATUS_IN_PROGRESS,
                    started_at=utc_now(),
                    start_latitude=coord.latitude,
                    start_longitude=coord.longitude,
                    checkpoint_count=0,
                    total_distance=0.0,
                    notes=notes,
                    version=1,
                )
                db.add(session)
                try:
                    db.commit()
                except IntegrityError:
                    # Another process won the race; the partial unique index is authoritative.
                    db.rollback()
                    winner = self._active_for(db, guard_id)
                    raise self._conflict(guard_id, winner.id if winner else None) from None

        logger.info("Patrol %s started by guard %s", session.id, guard_id)
        record_safely(
            self._audit,
            event_type=EVENT_STARTED,
            guard_id=guard_id,
            session_id=session.id,
            description="Patrol started",
            client=client,
            payload={
                "latitude": coord.latitude,
                "longitude": coord.longitude,
                "started_at": session.started_at.isoformat(),
                "notes": notes,
            },
        )
        self._publish(
            session,
            _session_event(SESSION_STARTED, session, latitude=coord.latitude, longitude=coord.longitude),
        )
        return SessionRecord(session=session)

    def get_active_session(self, guard_id: str) -> SessionRecord | None:
        """The guard's in-progress session with its checkpoints, or None. Used to resume after reconnect."""

        guard_id = _check_guard_id(guard_id)
        with db_scope(self._session_factory, "get_active_session", guard_id=guard_id) as db:
            session = self._active_for(db, guard_id)
            if session is None:
                return None
            checkpoints = self._visits(db, session.id)
            points = db.scalar(select(func.count(PositionSample.id)).where(PositionSample.session_id == session.id)) or 0
        return SessionRecord(session=session, checkpoints=checkpoints, trajectory_points=points)

    def finalize_session(
        self,
        session_id: uuid.UUID | str,
        position: Coordinate | None = None,
        notes: str | None = None,
        *,
        guard_id: str | None = None,
        client: ClientInfo | None = None,
    ) -> SessionRecord:
        """Close the session and compute its aggregates.

        An end ``position`` is stored as the last trajectory sample, then
        ``total_distance`` is the sum of great-circle distances between
        consecutive samples ordered by ``recorded_at``.

        Raises:
            ValidationError: bad coordinates or notes.
            NotFoundError: unknown session, or not owned by ``guard_id``.
            StateError: already finalized or cancelled.
        """

        sid = parse_session_id(session_id)
        coord = validate_coordinate(position.latitude, position.longitude, field="end position") if position else None
        notes = _check_text("notes", notes, MAX_NOTES_LEN)

        owner = session_owner(self._session_factory, sid, guard_id)
        with self._locks.hold(owner):
            with db_scope(self._session_factory, "finalize_session", session_id=sid) as db:
                session = load_session(db, sid, for_update=True)
                require_in_progress(session)

                now = utc_now()
                if coord is not None:
                    session.end_latitude = coord.latitude
                    session.end_longitude = coord.longitude
                    db.add(
                        PositionSample(
                            session_id=sid,
                            latitude=coord.latitude,
                            longitude=coord.longitude,
                            recorded_at=now,
                            received_at=now,
                        )
                    )
                    db.flush()
                samples = ordered_samples(db, sid)
                session.status = STATUS_FINALIZED
                session.ended_at = now
                session.duration_seconds = elapsed_seconds(session.started_at, now)
                session.total_distance = trajectory_distance(samples)
                session.notes = _append_note(session.notes, "Final notes", notes, bare_if_first=True)
                session.version += 1
                checkpoints = self._visits(db, sid)
                db.commit()

        record = SessionRecord(session=session, checkpoints=checkpoints, trajectory_points=len(samples))
        aggregates = {
            "duration_seconds": session.duration_seconds,
            "total_distance": round(session.total_distance, 2),
            "checkpoint_count": session.checkpoint_count,
            "trajectory_points": record.trajectory_points,
        }
        logger.info(
            "Patrol %s finalized: %.0fs, %.1fm, %s checkpoints",
            sid,
            session.duration_seconds,
            session.total_distance,
            session.checkpoint_count,
        )
        record_safely(
            self._audit,
            event_type=EVENT_FINALIZED,
            guard_id=owner,
            session_id=sid,
            description=(
                f"Patrol finalized: {session.total_distance / 1000:.2f} km, "
                f"{session.checkpoint_count} checkpoint(s), {record.trajectory_points} trajectory point(s)"
            ),
            client=client,
            payload={
                **aggregates,
                "ended_at": now.isoformat(),
                "end_latitude": session.end_latitude,
                "end_longitude": session.end_longitude,
            },
        )
        self._publish(session, _session_event(SESSION_FINALIZED, session, **aggregates))
        return record

    def cancel_session(
        self,
        session_id: uuid.UUID | str,
        reason: str | None = None,
        *,
        guard_id: str | None = None,
        automatic: bool = False,
        client: ClientInfo | None = None,
    ) -> None:
        """Abandon the session. Distance is not computed.

        Raises:
            NotFoundError: unknown session, or not owned by ``guard_id``.
            StateError: already finalized or cancelled.
        """

        sid = parse_session_id(session_id)
        reason = _check_text("reason", reason, MAX_REASON_LEN)

        owner = session_owner(self._session_factory, sid, guard_id)
        with self._locks.hold(owner):
            with db_scope(self._session_factory, "cancel_session", session_id=sid) as db:
                session = load_session(db, sid, for_update=True)
                require_in_progress(session)

                now = utc_now()
                session.status = STATUS_CANCELLED
                session.ended_at = now
                session.duration_seconds = elapsed_seconds(session.started_at, now)
                session.notes = _append_note(session.notes, "Cancellation reason", reason)
                session.version += 1
                db.commit()

        if automatic:
            logger.warning("Patrol %s of guard %s cancelled automatically: %s", sid, owner, reason)
        else:
            logger.info("Patrol %s cancelled by guard %s", sid, owner)
        record_safely(
            self._audit,
            event_type=EVENT_CANCELLED,
            guard_id=owner,
            session_id=sid,
            description=f"Patrol cancelled{' automatically' if automatic else ''}: {reason or 'no reason given'}",
            client=client,
            payload={
                "reason": reason,
                "automatic": automatic,
                "ended_at": now.isoformat(),
                "duration_seconds": session.duration_seconds,
                "checkpoint_count": session.checkpoint_count,
            },
        )
        self._publish(session, _session_event(SESSION_CANCELLED, session, reason=reason, automatic=automatic))

    @staticmethod
    def _active_for(db: Session, guard_id: str) -> PatrolSession | None:
        return db.scalar(
            select(PatrolSession).where(PatrolSession.guard_id == guard_id, PatrolSession.status == STATUS_IN_PROGRESS)
        )

    @staticmethod
    def _visits(db: Session, session_id: uuid.UUID) -> list[CheckpointVisit]:
        stmt = select(CheckpointVisit).where(CheckpointVisit.session_id == session_id).order_by(CheckpointVisit.sequence_number)
        return list(db.scalars(stmt).all())

    @staticmethod
    def _conflict(guard_id: str, session_id: uuid.UUID | None) -> ConflictError:
        logger.info("Guard %s already has patrol %s in progress", guard_id, session_id)
        return ConflictError(
            "Guard already has a patrol in progress",
            details={"session_id": str(session_id) if session_id else None},
        )
