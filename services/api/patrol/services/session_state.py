from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patrol.core.errors import NotFoundError, PersistenceError, StateError, ValidationError
from patrol.models.patrol_session import STATUS_IN_PROGRESS, PatrolSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_session_id(value: object) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError("session_id must be a UUID") from None


@contextmanager
def db_scope(session_factory: SessionFactory, action: str, **context: object) -> Iterator[Session]:
    """One unit of work. Storage failures roll back and surface as ``PersistenceError``."""

    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Storage failure during %s %s", action, context)
        raise PersistenceError() from exc
    finally:
        db.close()


def session_owner(session_factory: SessionFactory, session_id: uuid.UUID, guard_id: str | None = None) -> str:
    """Guard that owns ``session_id``; used to pick the lock before mutating."""

    with db_scope(session_factory, "owner lookup", session_id=session_id) as db:
        owner = db.scalar(select(PatrolSession.guard_id).where(PatrolSession.id == session_id))
    if owner is None or (guard_id is not None and owner != guard_id):
        raise NotFoundError("Patrol session not found", code="SESSION_NOT_FOUND")
    return owner


def load_session(db: Session, session_id: uuid.UUID, *, for_update: bool = False) -> PatrolSession:
    stmt = select(PatrolSession).where(PatrolSession.id == session_id)
    if for_update:
        stmt = stmt.with_for_update()
    session = db.scalar(stmt)
    if session is None:
        raise NotFoundError("Patrol session not found", code="SESSION_NOT_FOUND")
    return session


def require_in_progress(session: PatrolSession) -> None:
    if session.status != STATUS_IN_PROGRESS:
        raise StateError(
            f"Patrol session is {session.status}",
            details={"session_id": str(session.id), "status": session.status},
        )


def elapsed_seconds(start: datetime, end: datetime) -> float:
    # Clock skew between writers never yields a negative delta.
    return max(0.0, (end - start).total_seconds())
