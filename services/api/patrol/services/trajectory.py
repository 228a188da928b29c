"""Trajectory ingestion: GPS samples pushed by a guard's device during a patrol."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from patrol.core.errors import ValidationError
from patrol.models.audit import EVENT_TRAJECTORY_POINT
from patrol.models.position import PositionSample
from patrol.services.audit import AuditTrail, ClientInfo, record_safely
from patrol.services.events import TRAJECTORY_POINT, EventPublisher, publish_safely, session_topic
from patrol.services.geo import Coordinate, path_length_m, validate_coordinate
from patrol.services.locks import GuardLocks
from patrol.services.session_state import (
    SessionFactory,
    db_scope,
    load_session,
    parse_session_id,
    require_in_progress,
    session_owner,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_ACCURACY_M = 1000.0


def _optional_number(name: str, value: float | None, *, minimum: float | None = None, maximum: float | None = None) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    if minimum is not None and number < minimum:
        raise ValidationError(f"{name} must be >= {minimum:g}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{name} must be <= {maximum:g}")
    return number


def ordered_samples(db: Session, session_id: uuid.UUID) -> list[PositionSample]:
    """Samples by device time; arrival time breaks ties between identical timestamps."""

    stmt = (
        select(PositionSample)
        .where(PositionSample.session_id == session_id)
        .order_by(PositionSample.recorded_at, PositionSample.received_at)
    )
    return list(db.scalars(stmt).all())


def trajectory_distance(samples: Sequence[PositionSample]) -> float:
    return path_length_m(Coordinate(s.latitude, s.longitude) for s in samples)


class TrajectoryIngestor:
    def __init__(
        self,
        session_factory: SessionFactory,
        locks: GuardLocks,
        audit: AuditTrail,
        publisher: EventPublisher,
        *,
        audit_points: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._audit = audit
        self._publisher = publisher
        self._audit_points = audit_points

    def append_sample(
        self,
        session_id: uuid.UUID | str,
        position: Coordinate,
        *,
        accuracy: float | None = None,
        altitude: float | None = None,
        speed: float | None = None,
        recorded_at: datetime | None = None,
        guard_id: str | None = None,
        client: ClientInfo | None = None,
    ) -> PositionSample:
        """Store one sample against an in-progress session.

        Samples are stored as they arrive, with their own ``recorded_at``;
        ordering happens when the trajectory is read.

        Raises:
            ValidationError: bad coordinates or sensor values.
            NotFoundError: unknown session, or not owned by ``guard_id``.
            StateError: the session is finalized or cancelled.
        """

        sid = parse_session_id(session_id)
        coord = validate_coordinate(position.latitude, position.longitude)
        accuracy = _optional_number("accuracy", accuracy, minimum=0.0, maximum=MAX_ACCURACY_M)
        altitude = _optional_number("altitude", altitude)
        speed = _optional_number("speed", speed, minimum=0.0)
        received_at = utc_now()
        if recorded_at is None:
            recorded_at = received_at
        elif recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=timezone.utc)

        owner = session_owner(self._session_factory, sid, guard_id)
        with self._locks.hold(owner):
            with db_scope(self._session_factory, "append_sample", session_id=sid) as db:
                session = load_session(db, sid, for_update=True)
                require_in_progress(session)
                sample = PositionSample(
                    session_id=sid,
                    latitude=coord.latitude,
                    longitude=coord.longitude,
                    accuracy=accuracy,
                    altitude=altitude,
                    speed=speed,
                    recorded_at=recorded_at,
                    received_at=received_at,
                )
                db.add(sample)
                db.commit()

        point = {
            "sample_id": str(sample.id),
            "latitude": sample.latitude,
            "longitude": sample.longitude,
            "accuracy": sample.accuracy,
            "speed": sample.speed,
            "recorded_at": sample.recorded_at.isoformat(),
        }
        if self._audit_points:
            record_safely(
                self._audit,
                event_type=EVENT_TRAJECTORY_POINT,
                guard_id=owner,
                session_id=sid,
                description=f"Trajectory point {sample.latitude:.6f}, {sample.longitude:.6f}",
                client=client,
                payload=point,
            )
        publish_safely(
            self._publisher,
            session_topic(sid),
            {"type": TRAJECTORY_POINT, "data": {"session_id": str(sid), "guard_id": owner, **point}},
        )
        return sample

    def list_samples(self, session_id: uuid.UUID | str) -> list[PositionSample]:
        sid = parse_session_id(session_id)
        with db_scope(self._session_factory, "list_samples", session_id=sid) as db:
            return ordered_samples(db, sid)
