from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from patrol.core.errors import StateError, ValidationError
from patrol.db.session import SessionLocal
from patrol.models.audit import AuditEntry
from patrol.services.audit import AuditTrail
from patrol.services.geo import Coordinate
from patrol.services.locks import GuardLocks
from patrol.services.trajectory import TrajectoryIngestor

# 50 m of latitude on a 6371 km sphere.
STEP_DEG = 50 / 111_194.93
T0 = datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)


def _north(n: int) -> Coordinate:
    return Coordinate(10.0 + n * STEP_DEG, 10.0)


def test_append_sample_is_stored_audited_and_relayed(services, publisher) -> None:
    started = services.sessions.start_session("guard-1", _north(0))
    sid = started.session.id

    sample = services.trajectory.append_sample(sid, _north(1), accuracy=5.0, altitude=760.0, speed=1.2)

    assert sample.session_id == sid
    assert sample.accuracy == 5.0
    assert sample.recorded_at == sample.received_at
    assert publisher.types(f"patrol:{sid}")[-1] == "trajectory:point"
    assert "trajectory:point" not in publisher.types("patrols")
    with SessionLocal() as db:
        kinds = db.scalars(select(AuditEntry.event_type).where(AuditEntry.session_id == sid)).all()
    assert sorted(kinds) == ["started", "trajectory_point"]


def test_out_of_order_samples_are_read_back_by_device_time(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id

    services.trajectory.append_sample(sid, _north(2), recorded_at=T0 + timedelta(seconds=60))
    services.trajectory.append_sample(sid, _north(0), recorded_at=T0)
    services.trajectory.append_sample(sid, _north(1), recorded_at=T0 + timedelta(seconds=30))

    samples = services.trajectory.list_samples(sid)
    assert [s.recorded_at for s in samples] == [T0, T0 + timedelta(seconds=30), T0 + timedelta(seconds=60)]

    record = services.sessions.finalize_session(sid)
    # Arrival order would zigzag to ~150 m; device order is a straight 100 m.
    assert record.session.total_distance == pytest.approx(100.0, rel=1e-3)
    assert record.trajectory_points == 3


def test_duplicate_samples_add_no_distance(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    for _ in range(3):
        services.trajectory.append_sample(sid, _north(1), recorded_at=T0)
    services.trajectory.append_sample(sid, _north(2), recorded_at=T0 + timedelta(seconds=30))

    record = services.sessions.finalize_session(sid)
    assert record.session.total_distance == pytest.approx(50.0, rel=1e-3)


def test_naive_device_time_is_taken_as_utc(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    sample = services.trajectory.append_sample(sid, _north(1), recorded_at=datetime(2026, 3, 1, 22, 0))
    assert sample.recorded_at == T0


@pytest.mark.parametrize("close", ["finalize", "cancel"])
def test_append_to_closed_session_is_rejected(services, close) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    if close == "finalize":
        services.sessions.finalize_session(sid)
    else:
        services.sessions.cancel_session(sid)

    with pytest.raises(StateError) as exc:
        services.trajectory.append_sample(sid, _north(1))
    assert exc.value.details["status"] in {"finalized", "cancelled"}


@pytest.mark.parametrize(
    "kwargs",
    [{"accuracy": 1500.0}, {"accuracy": -1.0}, {"speed": -0.5}, {"altitude": float("inf")}],
)
def test_bad_sensor_values_are_rejected(services, kwargs) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    with pytest.raises(ValidationError):
        services.trajectory.append_sample(sid, _north(1), **kwargs)
    assert services.trajectory.list_samples(sid) == []


def test_per_point_audit_can_be_disabled(services, publisher) -> None:
    ingestor = TrajectoryIngestor(SessionLocal, GuardLocks(), AuditTrail(SessionLocal), publisher, audit_points=False)
    sid = services.sessions.start_session("guard-1", _north(0)).session.id

    ingestor.append_sample(sid, _north(1))

    with SessionLocal() as db:
        kinds = db.scalars(select(AuditEntry.event_type).where(AuditEntry.session_id == sid)).all()
    assert kinds == ["started"]
