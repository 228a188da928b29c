"""Append-only audit trail of patrol domain events."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patrol.core.errors import PersistenceError, ValidationError
from patrol.models.audit import AUDIT_EVENT_TYPES, AuditEntry
from patrol.services.pagination import Page, day_bounds, paginate

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LEN = 255
MAX_USER_AGENT_LEN = 255


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, as seen by the HTTP layer."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditFilters:
    session_id: uuid.UUID | None = None
    guard_id: str | None = None
    event_type: str | None = None
    date_from: date | None = None
    date_to: date | None = None


class AuditTrail:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def append(
        self,
        *,
        event_type: str,
        guard_id: str,
        session_id: uuid.UUID | None = None,
        payload: dict[str, Any] | None = None,
        description: str | None = None,
        client: ClientInfo | None = None,
        recorded_at: datetime | None = None,
    ) -> AuditEntry:
        """Write one entry in its own transaction.

        Raises:
            ValidationError: unknown event type.
            PersistenceError: storage unavailable.
        """

        if event_type not in AUDIT_EVENT_TYPES:
            raise ValidationError(f"Unknown audit event type: {event_type}")

        entry = AuditEntry(
            session_id=session_id,
            guard_id=guard_id,
            event_type=event_type,
            payload=payload or {},
            description=description[:MAX_DESCRIPTION_LEN] if description else None,
            client_ip=client.ip if client else None,
            user_agent=client.user_agent[:MAX_USER_AGENT_LEN] if client and client.user_agent else None,
            recorded_at=recorded_at or datetime.now(timezone.utc),
        )
        try:
            with self._session_factory() as db:
                db.add(entry)
                db.commit()
        except SQLAlchemyError as exc:
            logger.exception("Audit append failed: event=%s session=%s guard=%s", event_type, session_id, guard_id)
            raise PersistenceError() from exc
        return entry

    def query(self, filters: AuditFilters | None = None, *, page: int = 1, limit: int = 50) -> Page[AuditEntry]:
        filters = filters or AuditFilters()
        if filters.event_type and filters.event_type not in AUDIT_EVENT_TYPES:
            raise ValidationError(f"Unknown audit event type: {filters.event_type}")
        start, end = day_bounds(filters.date_from, filters.date_to)

        stmt = select(AuditEntry)
        if filters.session_id is not None:
            stmt = stmt.where(AuditEntry.session_id == filters.session_id)
        if filters.guard_id:
            stmt = stmt.where(AuditEntry.guard_id == filters.guard_id)
        if filters.event_type:
            stmt = stmt.where(AuditEntry.event_type == filters.event_type)
        if start is not None:
            stmt = stmt.where(AuditEntry.recorded_at >= start)
        if end is not None:
            stmt = stmt.where(AuditEntry.recorded_at < end)
        stmt = stmt.order_by(desc(AuditEntry.recorded_at), desc(AuditEntry.id))

        try:
            with self._session_factory() as db:
                return paginate(db, stmt, page=page, limit=limit)
        except SQLAlchemyError as exc:
            logger.exception("Audit query failed: %s", filters)
            raise PersistenceError() from exc


def record_safely(audit: AuditTrail, **kwargs: Any) -> None:
    """Append without letting an audit failure undo a committed domain change."""

    try:
        audit.append(**kwargs)
    except PersistenceError:
        # Already logged with context by AuditTrail.append.
        return
