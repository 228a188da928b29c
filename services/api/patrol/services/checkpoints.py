"""Checkpoint visits and geofence proximity checks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from patrol.core.errors import NotFoundError, SequenceConflictError, ValidationError
from patrol.models.audit import EVENT_CHECKPOINT
from patrol.models.checkpoint import CheckpointVisit
from patrol.services.audit import AuditTrail, ClientInfo, record_safely
from patrol.services.control_points import ControlPointRegistry, ControlPointView
from patrol.services.events import CHECKPOINT_RECORDED, EventPublisher, publish_safely, session_topic
from patrol.services.geo import Coordinate, distance, validate_coordinate
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

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LEN = 500


@dataclass(frozen=True)
class ProximityResult:
    valid: bool
    distance: float
    radius: float
    control_point: ControlPointView

    @property
    def remaining(self) -> float:
        """Meters still to cover before entering the geofence."""
        return max(0.0, self.distance - self.radius)


def _clean_text(name: str, value: str | None, max_len: int) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters")
    return value or None


class CheckpointRecorder:
    def __init__(
        self,
        session_factory: SessionFactory,
        locks: GuardLocks,
        registry: ControlPointRegistry,
        audit: AuditTrail,
        publisher: EventPublisher,
        *,
        broadcast_topic: str,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._registry = registry
        self._audit = audit
        self._publisher = publisher
        self._broadcast_topic = broadcast_topic

    def _active_control_point(self, control_point_id: str) -> ControlPointView:
        point = self._registry.get(str(control_point_id))
        if point is None or not point.active:
            raise NotFoundError("Control point not found or inactive", code="CONTROL_POINT_NOT_FOUND")
        return point

    def validate_proximity(self, control_point_id: str, position: Coordinate) -> ProximityResult:
        """Side-effect-free geofence check the device runs before committing to a visit."""

        coord = validate_coordinate(position.latitude, position.longitude)
        point = self._active_control_point(control_point_id)
        meters = distance(coord, point.position)
        return ProximityResult(
            valid=meters <= point.radius_meters,
            distance=meters,
            radius=point.radius_meters,
            control_point=point,
        )

    def record_checkpoint(
        self,
        session_id: uuid.UUID | str,
        position: Coordinate,
        *,
        control_point_id: str | None = None,
        description: str | None = None,
        photo_url: str | None = None,
        guard_id: str | None = None,
        client: ClientInfo | None = None,
    ) -> CheckpointVisit:
        """Record a visit, matched to a control point or free-form.

        Out-of-range visits are stored with ``within_radius = False``; the
        geofence result is informational, never a rejection.

        Raises:
            ValidationError: bad coordinates or oversized text.
            NotFoundError: unknown session / control point, or inactive control point.
            StateError: the session is finalized or cancelled. Checked before the control point.
            SequenceConflictError: another writer took the sequence number; retry.
        """

        sid = parse_session_id(session_id)
        coord = validate_coordinate(position.latitude, position.longitude)
        description = _clean_text("description", description, MAX_DESCRIPTION_LEN)
        photo_url = _clean_text("photo_url", photo_url, 500)

        owner = session_owner(self._session_factory, sid, guard_id)
        with self._locks.hold(owner):
            with db_scope(self._session_factory, "record_checkpoint", session_id=sid) as db:
                session = load_session(db, sid, for_update=True)
                require_in_progress(session)
                point = self._active_control_point(control_point_id) if control_point_id else None

                previous = self._last_visit(db, sid)
                now = utc_now()
                if previous is not None:
                    sequence = previous.sequence_number + 1
                    elapsed = elapsed_seconds(previous.recorded_at, now)
                    from_previous = distance(Coordinate(previous.latitude, previous.longitude), coord)
                else:
                    sequence = 1
                    elapsed = elapsed_seconds(session.started_at, now)
                    from_previous = distance(Coordinate(session.start_latitude, session.start_longitude), coord)

                to_point = distance(coord, point.position) if point else None
                visit = CheckpointVisit(
                    session_id=sid,
                    control_point_id=point.id if point else None,
                    sequence_number=sequence,
                    latitude=coord.latitude,
                    longitude=coord.longitude,
                    distance_to_point=to_point,
                    within_radius=(to_point <= point.radius_meters) if point and to_point is not None else None,
                    distance_from_previous=from_previous,
                    description=description,
                    photo_url=photo_url,
                    recorded_at=now,
                    elapsed_since_previous=elapsed,
                )
                db.add(visit)
                session.checkpoint_count = sequence
                session.version += 1
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning("Checkpoint sequence %s already taken in session %s", sequence, sid)
                    raise SequenceConflictError("Another checkpoint was recorded concurrently; retry") from None

        logger.info("Checkpoint #%s recorded in session %s (guard %s)", sequence, sid, owner)
        payload = {
            "checkpoint_id": str(visit.id),
            "sequence_number": visit.sequence_number,
            "control_point_id": visit.control_point_id,
            "latitude": visit.latitude,
            "longitude": visit.longitude,
            "distance_to_point": visit.distance_to_point,
            "within_radius": visit.within_radius,
            "radius_meters": point.radius_meters if point else None,
            "elapsed_since_previous": visit.elapsed_since_previous,
            "distance_from_previous": round(visit.distance_from_previous, 2),
            "description": visit.description,
        }
        where = f" at {point.name}" if point else ""
        record_safely(
            self._audit,
            event_type=EVENT_CHECKPOINT,
            guard_id=owner,
            session_id=sid,
            description=f"Checkpoint #{sequence} recorded{where}",
            client=client,
            payload=payload,
        )
        event = {
            "type": CHECKPOINT_RECORDED,
            "data": {"session_id": str(sid), "guard_id": owner, "recorded_at": visit.recorded_at.isoformat(), **payload},
        }
        publish_safely(self._publisher, self._broadcast_topic, event)
        publish_safely(self._publisher, session_topic(sid), event)
        return visit

    @staticmethod
    def _last_visit(db: Session, session_id: uuid.UUID) -> CheckpointVisit | None:
        return db.scalar(
            select(CheckpointVisit)
            .where(CheckpointVisit.session_id == session_id)
            .order_by(desc(CheckpointVisit.sequence_number))
            .limit(1)
        )

    def list_visits(self, session_id: uuid.UUID | str) -> list[CheckpointVisit]:
        sid = parse_session_id(session_id)
        with db_scope(self._session_factory, "list_visits", session_id=sid) as db:
            stmt = select(CheckpointVisit).where(CheckpointVisit.session_id == sid).order_by(CheckpointVisit.sequence_number)
            return list(db.scalars(stmt).all())
