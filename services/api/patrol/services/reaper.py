from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from starlette.concurrency import run_in_threadpool

from patrol.core.errors import PatrolError
from patrol.models.checkpoint import CheckpointVisit
from patrol.models.patrol_session import STATUS_IN_PROGRESS, PatrolSession
from patrol.models.position import PositionSample
from patrol.services.session_state import SessionFactory, db_scope, utc_now
from patrol.services.sessions import SessionManager

logger = logging.getLogger(__name__)

IDLE_REASON = "idle timeout"


@dataclass(frozen=True)
class IdleSession:
    session_id: uuid.UUID
    guard_id: str
    last_activity: datetime


class IdleSessionReaper:
    """Cancels in-progress patrols with no activity for ``timeout``.

    Activity is the latest of the session start, the last sample received and
    the last checkpoint recorded. Cancellation goes through
    ``SessionManager.cancel_session`` so each one leaves a ``cancelled`` audit
    entry flagged ``automatic``.
    """

    def __init__(self, session_factory: SessionFactory, manager: SessionManager, *, timeout: timedelta) -> None:
        if timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
        self._session_factory = session_factory
        self._manager = manager
        self._timeout = timeout

    def find_idle(self, now: datetime | None = None) -> list[IdleSession]:
        now = now or utc_now()
        last_sample = (
            select(func.max(PositionSample.received_at))
            .where(PositionSample.session_id == PatrolSession.id)
            .correlate(PatrolSession)
            .scalar_subquery()
        )
        last_visit = (
            select(func.max(CheckpointVisit.recorded_at))
            .where(CheckpointVisit.session_id == PatrolSession.id)
            .correlate(PatrolSession)
            .scalar_subquery()
        )
        stmt = select(PatrolSession.id, PatrolSession.guard_id, PatrolSession.started_at, last_sample, last_visit).where(
            PatrolSession.status == STATUS_IN_PROGRESS
        )
        with db_scope(self._session_factory, "find_idle") as db:
            rows = db.execute(stmt).all()

        idle = []
        for session_id, guard_id, started_at, sample_at, visit_at in rows:
            last = max(t for t in (started_at, sample_at, visit_at) if t is not None)
            if now - last >= self._timeout:
                idle.append(IdleSession(session_id=session_id, guard_id=guard_id, last_activity=last))
        return idle

    def sweep(self, now: datetime | None = None) -> list[uuid.UUID]:
        cancelled = []
        for item in self.find_idle(now):
            try:
                self._manager.cancel_session(item.session_id, IDLE_REASON, automatic=True)
            except PatrolError as exc:
                # Closed by its guard between the scan and the cancel.
                logger.info("Skipping idle patrol %s: %s", item.session_id, exc.code)
                continue
            cancelled.append(item.session_id)
        if cancelled:
            logger.warning("Idle reaper cancelled %s patrol(s)", len(cancelled))
        return cancelled

    async def run(self, interval_seconds: float) -> None:
        logger.info("Idle reaper running every %ss, timeout %s", interval_seconds, self._timeout)
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except Exception:  # noqa: BLE001
                logger.exception("Idle reaper sweep failed; retrying in %ss", interval_seconds)
            await asyncio.sleep(interval_seconds)
