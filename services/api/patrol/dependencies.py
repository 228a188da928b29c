from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from patrol.core.config import settings
from patrol.db.session import SessionLocal
from patrol.services.audit import AuditTrail
from patrol.services.checkpoints import CheckpointRecorder
from patrol.services.control_points import ControlPointRegistry, SqlControlPointRegistry, YamlControlPointRegistry
from patrol.services.events import CompositePublisher, EventPublisher, WebhookPublisher
from patrol.services.history import PatrolHistory
from patrol.services.locks import GuardLocks
from patrol.services.reaper import IdleSessionReaper
from patrol.services.sessions import SessionManager
from patrol.services.trajectory import TrajectoryIngestor
from patrol.services.ws import ws_manager


@dataclass
class PatrolServices:
    registry: ControlPointRegistry
    audit: AuditTrail
    sessions: SessionManager
    trajectory: TrajectoryIngestor
    checkpoints: CheckpointRecorder
    history: PatrolHistory
    reaper: IdleSessionReaper | None


def build_registry() -> ControlPointRegistry:
    if settings.control_points_source == "db":
        return SqlControlPointRegistry(SessionLocal)
    return YamlControlPointRegistry(settings.control_points_source)


def build_publisher() -> EventPublisher:
    if not settings.event_webhook_url:
        return ws_manager
    return CompositePublisher([ws_manager, WebhookPublisher(settings.event_webhook_url)])


def build_services(publisher: EventPublisher, registry: ControlPointRegistry | None = None) -> PatrolServices:
    locks = GuardLocks()
    audit = AuditTrail(SessionLocal)
    registry = registry or build_registry()
    sessions = SessionManager(SessionLocal, locks, audit, publisher, broadcast_topic=settings.broadcast_topic)
    reaper = None
    if settings.idle_session_timeout_minutes > 0:
        reaper = IdleSessionReaper(
            SessionLocal, sessions, timeout=timedelta(minutes=settings.idle_session_timeout_minutes)
        )
    return PatrolServices(
        registry=registry,
        audit=audit,
        sessions=sessions,
        trajectory=TrajectoryIngestor(
            SessionLocal, locks, audit, publisher, audit_points=settings.audit_trajectory_points
        ),
        checkpoints=CheckpointRecorder(
            SessionLocal, locks, registry, audit, publisher, broadcast_topic=settings.broadcast_topic
        ),
        history=PatrolHistory(SessionLocal),
        reaper=reaper,
    )


_services = build_services(build_publisher())


def get_services() -> PatrolServices:
    return _services


def override_services(publisher: EventPublisher, registry: ControlPointRegistry | None = None) -> PatrolServices:
    """Rebuild the service graph around another publisher / registry. Used by tests and tools."""

    global _services
    _services = build_services(publisher, registry)
    return _services


def reset_state() -> None:
    global _services
    _services = build_services(build_publisher())
